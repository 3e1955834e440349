"""Allow ``python -m lockdown``."""

import sys

from lockdown.cli import main

sys.exit(main())
