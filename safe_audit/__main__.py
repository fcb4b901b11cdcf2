# Allows the package to be run as a script using `python -m safe_audit`

from __future__ import annotations

import sys

from safe_audit.cli import main

if __name__ == "__main__":
    sys.exit(main())
