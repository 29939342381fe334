import sys

from micdrop.menubar_main import main

sys.exit(main())
