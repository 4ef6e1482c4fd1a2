"""Allow running ipfs-update as `python -m ipfs_update`."""

import sys

from ipfs_update.cli import main

sys.exit(main())
