"""Configuration, admission rules and webhook, rule-binding cache, alert exporter and resource watches for a cluster operator."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "exporter",
    "failure",
    "kube",
    "loader",
    "rulebinding",
    "rules",
    "validator",
    "watchbuilder",
    "webhook",
]