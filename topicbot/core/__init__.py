"""Core components: settings, logging, errors, persistence and shared types."""
