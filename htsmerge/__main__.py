import sys

from htsmerge.cli import main

sys.exit(main())
