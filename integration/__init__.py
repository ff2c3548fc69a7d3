"""Integration layer — configuration, logging, CLI helpers and the runtime."""
