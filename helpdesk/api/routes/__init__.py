from . import customers, departments, sync, tickets

__all__ = [
    "customers",
    "departments",
    "sync",
    "tickets",
]
