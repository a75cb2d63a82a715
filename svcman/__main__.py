"""Entry point for running svcman via `python -m svcman`."""

from svcman.cli import main


if __name__ == '__main__':
    main()
