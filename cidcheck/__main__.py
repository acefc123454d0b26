"""Allow ``python -m cidcheck``."""

from cidcheck.cli.main import main

if __name__ == "__main__":
    main()
