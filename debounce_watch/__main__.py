"""Allow ``python -m debounce_watch``."""

from debounce_watch.main import main

if __name__ == "__main__":
    main()
