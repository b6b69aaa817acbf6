"""
Entry point forwarder.

The server lives in the ``ble_fusion_server`` package with the
``ble-fusion-server`` console script; this file keeps ``python main.py run``
working and forwards to ``ble_fusion_server.cli:main``.
"""

import sys

from ble_fusion_server.cli import main as _cli_main


def main():
    return _cli_main()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
