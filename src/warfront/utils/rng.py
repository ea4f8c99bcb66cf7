"""Deterministic random number generation for Warfront.

All randomness is seeded from the state of the action being resolved
(battle, actor, action number, purpose) so that:
- Reproducibility: the same action always rolls the same result
- Fairness: no hidden server-side randomness
- Audit trail: a logged seed is enough to replay a roll

Examples:
    >>> seed = generate_seed(battle_id=7, user_id=3, action=12, context="critical")
    >>> seed
    '7:3:12:critical'
    >>> result = roll_percent(seed, 25.0)
    >>> sorted(result)
    ['chance', 'roll', 'seed', 'success']
"""

import hashlib
import random
from typing import Any


def generate_seed(battle_id: int, user_id: int, action: int, context: str) -> str:
    """Generate a deterministic seed for one action.

    Format: "battle_id:user_id:action:context"

    Args:
        battle_id: Battle the action belongs to
        user_id: Acting user
        action: Sequence number of the action for this user in this battle
        context: What the roll is for (e.g. 'critical')

    Returns:
        Seed string

    Raises:
        ValueError: If any identifier is negative
    """
    if battle_id < 0:
        raise ValueError(f"battle_id must be non-negative, got {battle_id}")
    if user_id < 0:
        raise ValueError(f"user_id must be non-negative, got {user_id}")
    if action < 0:
        raise ValueError(f"action must be non-negative, got {action}")

    return f"{battle_id}:{user_id}:{action}:{context}"


def _seed_to_int(seed: str) -> int:
    """Convert seed string to a stable 64-bit integer for random.Random()."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    # Use first 8 bytes for a 64-bit integer
    return int.from_bytes(digest[:8], "big", signed=False)


def random_int(seed: str, min_val: int, max_val: int) -> dict[str, Any]:
    """Generate random integer in range with deterministic seed.

    Args:
        seed: Deterministic seed string
        min_val: Minimum value (inclusive)
        max_val: Maximum value (inclusive)

    Returns:
        Dictionary containing:
            - value: The random integer
            - min: The minimum value
            - max: The maximum value
            - seed: The seed used

    Raises:
        ValueError: If min_val > max_val
    """
    if min_val > max_val:
        raise ValueError(f"min_val ({min_val}) cannot be greater than max_val ({max_val})")

    rng = random.Random(_seed_to_int(seed))
    value = rng.randint(min_val, max_val)

    return {
        "value": value,
        "min": min_val,
        "max": max_val,
        "seed": seed,
    }


def roll_percent(seed: str, chance: float) -> dict[str, Any]:
    """Succeed with ``chance`` percent probability using a d100 roll.

    A chance of 0 or less never succeeds, 100 or more always succeeds.

    Returns:
        Dictionary containing:
            - success: Whether the roll was at or under the chance
            - roll: The d100 result (1..100)
            - chance: The requested chance
            - seed: The seed used
    """
    roll = random_int(seed, 1, 100)["value"]
    return {
        "success": chance > 0 and roll <= chance,
        "roll": roll,
        "chance": chance,
        "seed": seed,
    }
