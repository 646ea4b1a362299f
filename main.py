import sys

from opportunityos.cli import main


if __name__ == "__main__":
    # Same as `opportunityos start`, for running from a checkout.
    sys.exit(main(sys.argv[1:] or ["start"]))
