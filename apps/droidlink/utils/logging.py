"""
Logging setup for the droidlink server.
"""

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"


def configure_logging(
    level: Union[int, str] = logging.INFO, format: Optional[str] = None
) -> None:
    """
    Configure the root logger once; an existing configuration wins.
    """

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    if logging.getLogger().handlers:
        return

    logging.basicConfig(
        level=level,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
