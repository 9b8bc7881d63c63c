from __future__ import annotations

import logging
import sys


def setup_logging(level: str = 'INFO') -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s'))
    root.addHandler(handler)

    logging.getLogger('sqlalchemy.engine').setLevel(
        logging.INFO if level.upper() == 'DEBUG' else logging.WARNING
    )
