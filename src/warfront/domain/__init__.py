"""Domain layer for Warfront.

Pure rules with no database access:

* Enumerations for every status and tag (see :mod:`enums`).
* Rule configuration objects (see :mod:`rules_config`).
* Modifier and ranking formulas (see :mod:`modifiers`, :mod:`ranking`).
* Events, reports and rejection errors shared by the services.
"""

from . import enums, errors, events, modifiers, ranking, rules_config

__all__ = [
    "enums",
    "errors",
    "events",
    "modifiers",
    "ranking",
    "rules_config",
]
