"""
whisperbus — end-to-end encrypted messaging between anonymous peers that only
share one broadcast channel.

How it fits together:
- Each process makes a throwaway identity (X25519 key pair + "User-NNNNNNN").
- On connect it broadcasts handshakeRequest; whoever hasn't seen it yet
  stores the key and answers with handshakeAnswer addressed back.
- Any peer can announce itself master (setMasterKey); transmit() encrypts for
  the master unless told otherwise.
- Payloads are NaCl boxes (X25519 + XSalsa20-Poly1305), Base64(nonce||ct).
- Rate-limit notices and failed logins put the connection into a per-second
  cooldown before another connect is allowed.

Known limitations kept as-is: the master key is last-writer-wins with no
authority check, and user id collisions are not detected.
"""
__all__ = [
    "config",
    "crypto",
    "errors",
    "framing",
    "identity",
    "lifecycle",
    "messages",
    "registry",
    "relay",
    "run_node",
    "session",
    "transport",
]
