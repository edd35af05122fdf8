import sys

from encodelab.cli import main


if __name__ == "__main__":
    sys.exit(main())
