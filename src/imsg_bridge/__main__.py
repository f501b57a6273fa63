import sys

from imsg_bridge.main import main

if __name__ == "__main__":
    sys.exit(main())
