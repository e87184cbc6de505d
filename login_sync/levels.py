"""Mapping of privilege levels to supplementary groups."""

import logging
from typing import List

logger = logging.getLogger(__name__)

DEFAULT_LEVEL_FILE = '/opt/vyatta/etc/level'


def level_groups(level: str, level_file: str = DEFAULT_LEVEL_FILE) -> List[str]:
    """
    Convert a level to its additional groups.

    The level file holds lines of the form ``level:group1,group2``. Blank
    lines and lines starting with ``#`` are ignored and the first matching
    line wins.

    Args:
        level: Level name from the user configuration
        level_file: Path of the level mapping file

    Returns:
        Group names for the level, empty for an unknown level
    """
    try:
        with open(level_file, 'r') as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith('#'):
                    continue

                name, _, groups = line.partition(':')
                if name == level:
                    return [group for group in groups.split(',') if group]
    except OSError as e:
        logger.warning(f"Unable to read level file {level_file}: {e}")
        return []

    logger.debug(f"Level {level} not found in {level_file}")
    return []
