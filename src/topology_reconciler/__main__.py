import sys

from topology_reconciler.cli import main

sys.exit(main())
