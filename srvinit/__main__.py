import sys

from srvinit.cli import main

sys.exit(main())
