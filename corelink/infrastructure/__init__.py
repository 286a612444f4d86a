"""
Infrastructure layer containing external dependencies and I/O operations.

This layer handles configuration, logging, cryptography and the
transports that carry frames between cores.
"""
