from .security import IPFilter
from .metrics import install_builtin_routes

__all__ = ['IPFilter', 'install_builtin_routes']
