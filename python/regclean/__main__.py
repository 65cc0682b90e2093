import sys

from regclean.cli import main

sys.exit(main())
