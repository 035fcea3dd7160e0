"""Allow ``python -m devdocker [args...]`` with ``$DEVDOCKER_SERVICE`` set."""

from devdocker.entrypoint import main

main()
