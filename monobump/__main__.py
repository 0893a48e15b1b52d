"""Allow ``python -m monobump``."""

import sys

from monobump.cli import main

sys.exit(main())
