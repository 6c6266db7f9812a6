from __future__ import annotations

import sys

from lavalink_selector.cli import main


if __name__ == "__main__":
    sys.exit(main())
