import sys

from kernel_vm.cli import main

if __name__ == "__main__":
    sys.exit(main())
