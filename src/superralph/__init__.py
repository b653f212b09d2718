"""superralph - checkpointed, test-gated feature loop around the claude CLI."""

__version__ = "0.1.0"
