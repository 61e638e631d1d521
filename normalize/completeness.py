# normalize/completeness.py
from typing import Iterable, List


def missing_item_ids(required_ids: Iterable[int], stored_ids: Iterable[int]) -> List[int]:
    """Required item ids with no stored value, in required order."""
    stored = set(stored_ids)
    return [item_id for item_id in required_ids if item_id not in stored]

