"""Entry point for ``python -m sso_web_app``."""

from . import main

if __name__ == "__main__":
    main()
