__all__ = [
    "settings",
    "worker",
]
