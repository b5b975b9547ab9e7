"""Serial wire protocol and shared value types."""
