import sys

from rewrite_proxy.main import main

sys.exit(main())
