"""Request building, pooling, TLS and execution."""
