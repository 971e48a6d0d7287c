"""Allow ``python -m blynkcli`` (used by the installed shim)."""
from __future__ import annotations

from .cli import main

if __name__ == "__main__":
    main()
