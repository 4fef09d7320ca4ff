"""Allow ``python -m depforge``."""
from .cli import main

if __name__ == "__main__":
    main()
