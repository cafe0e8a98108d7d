"""Allow running as ``python -m stream_conformance``."""

from .cli import main

main()
