"""Run the helm-sync command line tool with `python -m helm_sync.tool`."""

from .helm_sync import main

main()
