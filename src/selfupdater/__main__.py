import sys

from selfupdater.cli import main

sys.exit(main())
