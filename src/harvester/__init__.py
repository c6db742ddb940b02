"""harvester core library.

This package turns a stream of pasted URLs into cleaned, metadata-tagged
Markdown documents plus one deterministic concatenated export per session.

Layout rules:
- `session.update` is the only place session state changes; it never does I/O.
- Everything that touches the network or the filesystem runs behind the
  effect runner and reports back through messages.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
