"""SecureHost installer (Python-first, state-driven).

Brings a Debian/Ubuntu host to a running Ollama + Open WebUI stack whose data,
including Docker's storage root, lives on a LUKS-encrypted container file.

Core design goals:
- Probe-driven and resumable
- Idempotent steps, no rollback
- Never destroy data that is not provably ours
- Centralized logging
"""

__all__ = []
