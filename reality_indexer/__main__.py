import sys

from reality_indexer.cli import main

sys.exit(main())
