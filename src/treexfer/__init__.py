"""treexfer: send a directory tree over one TCP connection.

The protocol is line-framed control tokens (ACK, FILE:, SIZE:, MD5:)
around length-delimited raw payloads, every file verified by MD5 on
arrival. Framing lives in `wire`, the two state machines in `sender` and
`receiver`, and connection setup in `session`.
"""

__all__ = []
