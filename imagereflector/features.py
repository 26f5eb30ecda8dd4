"""Feature gates supported by the controller and their default states."""

CACHE_SECRETS_AND_CONFIG_MAPS = "CacheSecretsAndConfigMaps"
"""Whether Secrets and ConfigMaps should be cached.

Caching both object types increases memory usage and needs cluster-wide
list and watch permissions. Opt-in.
"""

_features: dict[str, bool] = {
    CACHE_SECRETS_AND_CONFIG_MAPS: False,
}


def feature_gates() -> dict[str, bool]:
    """Return the supported feature gates mapped to their current values."""
    return _features


def enabled(feature: str) -> bool:
    """Return whether ``feature`` is enabled.

    Raises ``KeyError`` when the feature is not supported.
    """
    try:
        return _features[feature]
    except KeyError:
        raise KeyError(f"feature {feature!r} not supported") from None


def disable(feature: str) -> None:
    """Disable ``feature``; unknown features are ignored."""
    if feature in _features:
        _features[feature] = False