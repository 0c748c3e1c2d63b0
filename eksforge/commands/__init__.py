import logging
from typing import List, Optional

from eksforge.errors import InvalidSpecification

logger = logging.getLogger("eksforge.commands")


def split_list(value: Optional[str]) -> List[str]:
    """Split a comma-separated option value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_tags(value: Optional[str]) -> dict:
    """Parse ``k1=v1,k2=v2`` into a dict."""
    tags = {}
    for item in split_list(value):
        if "=" not in item:
            raise InvalidSpecification(f"invalid tag {item!r}, expected key=value")
        key, _, val = item.partition("=")
        tags[key.strip()] = val.strip()
    return tags
