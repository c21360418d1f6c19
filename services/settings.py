import os

# Mass of a typical filled 13 kg LPG cylinder (13 kg gas + 14 kg tare).
DEFAULT_UNIT_WEIGHT_KG = 27.0
KG_PER_CYLINDER = 27.0
# Tare of an empty cylinder when the catalog has none.
EMPTY_CYLINDER_KG = 14.0


def _env(name, default=None):
    value = os.environ.get(name)
    if value is None:
        return default
    return value


def as_bool(value, default=False):
    if value is None:
        return bool(default)
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on", "y"}:
        return True
    if text in {"0", "false", "no", "off", "n"}:
        return False
    return bool(default)


def _as_float(value, default):
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def unique_allocation_per_date():
    return as_bool(_env("ALLOCATION_UNIQUE_PER_DATE"), default=True)


def high_utilization_warn_pct():
    return _as_float(_env("ALLOCATION_HIGH_UTILIZATION_WARN_PCT"), 90.0)


def is_local_dev_mode():
    env_hint = (_env("APP_ENV") or _env("FLASK_ENV") or "").strip().lower()
    if env_hint in {"dev", "development", "local"}:
        return True
    return (_env("FLASK_DEBUG") or "").strip() == "1"
