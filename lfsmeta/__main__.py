import sys

from lfsmeta.cli import main

sys.exit(main())
