import sys

from buildwatch.cli.main import main

sys.exit(main())
