"""
Feature scheduling: which single feature should be worked on next.

Pure functions over an in-memory feature list. No I/O, no module state.

Selection rule:
1. Walk priority tiers high -> medium -> low
2. Within a tier keep the declared list order
3. Return the first feature that is not passing and whose dependencies pass

A dependency cycle (or a dependency on a feature that can never pass) leaves
incomplete features with nothing eligible. next_feature() then returns None
while is_complete() is False; callers must report that as "blocked", never
as done.
"""

from typing import Dict, List, Optional, Sequence, Tuple

from superralph.prd import PRIORITY_ORDER, Feature


def _passing_ids(features: Sequence[Feature]) -> set:
    return {f.id for f in features if f.passes}


def dependencies_met(feature: Feature, features: Sequence[Feature]) -> bool:
    """
    Check whether every dependency of a feature passes.

    Args:
        feature: Feature to check
        features: Full feature list (dependency lookup)

    Returns:
        True if depends_on is empty or all referenced features pass.
        An id that matches no feature counts as unmet.
    """
    if not feature.depends_on:
        return True
    passing = _passing_ids(features)
    return all(dep_id in passing for dep_id in feature.depends_on)


def get_unmet_dependencies(feature: Feature, features: Sequence[Feature]) -> List[str]:
    """Return the dependency ids of ``feature`` that are not passing yet, in declared order."""
    passing = _passing_ids(features)
    return [dep_id for dep_id in feature.depends_on if dep_id not in passing]


def get_blocked_features(features: Sequence[Feature]) -> List[Feature]:
    """Return incomplete features whose dependencies are not all passing."""
    return [f for f in features if not f.passes and not dependencies_met(f, features)]


def is_complete(features: Sequence[Feature]) -> bool:
    """True iff the list is non-empty and every feature passes."""
    return len(features) > 0 and all(f.passes for f in features)


def next_feature(features: Sequence[Feature]) -> Optional[Feature]:
    """
    Select the next feature to work on.

    Args:
        features: Feature list in declared order

    Returns:
        The eligible feature with the highest priority (earliest declared
        on ties), or None if nothing is eligible.
    """
    passing = _passing_ids(features)
    for priority in PRIORITY_ORDER:
        for feature in features:
            if feature.passes or feature.priority != priority:
                continue
            if all(dep_id in passing for dep_id in feature.depends_on):
                return feature
    return None


def next_feature_with_reason(features: Sequence[Feature]) -> Tuple[Optional[Feature], str]:
    """
    Select the next feature and explain the choice.

    Returns:
        (feature, reason). When feature is None the reason says why:
        no features, all complete, or which features are blocked on what.
    """
    if not features:
        return None, "no features defined"
    if is_complete(features):
        return None, "all features complete"

    feature = next_feature(features)
    if feature is not None:
        return feature, f"{feature.priority} priority, dependencies satisfied"

    blocked: Dict[str, List[str]] = {
        f.id: get_unmet_dependencies(f, features) for f in get_blocked_features(features)
    }
    if not blocked:
        # Only reachable with priorities outside the known tiers
        return None, "no eligible features (unrecognized priorities)"

    details = ", ".join(
        f"{fid} (waiting on {', '.join(deps)})" for fid, deps in blocked.items()
    )
    return None, f"all remaining features are blocked by unmet dependencies: {details}"
