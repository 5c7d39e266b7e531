"""Run the launchpad service."""

from launchpad.__main__ import main

if __name__ == "__main__":
    main()
