import sys

from escrowload.cli import main

sys.exit(main())
