from rollwave_core.storage.paths import control_uri, join_uri

__all__ = ["control_uri", "join_uri"]
