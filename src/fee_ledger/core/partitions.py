'''
Splits the student ID space into disjoint ranges for sharded reconciliation.
'''
from uuid import UUID

from ..models.fees import AccountRange

_UUID_SPACE = 1 << 128


def split_account_space(shard_count: int) -> list[AccountRange]:
    """
    Cuts the 128-bit UUID space into `shard_count` contiguous, disjoint ranges.
    The first range starts unbounded and the last ends unbounded so every
    student falls into exactly one shard.
    """
    if shard_count < 1:
        raise ValueError("shard_count must be at least 1")
    if shard_count == 1:
        return [AccountRange()]

    step = _UUID_SPACE // shard_count
    bounds = [UUID(int=step * i) for i in range(1, shard_count)]
    ranges = [AccountRange(end=bounds[0])]
    for lower, upper in zip(bounds, bounds[1:]):
        ranges.append(AccountRange(start=lower, end=upper))
    ranges.append(AccountRange(start=bounds[-1]))
    return ranges
