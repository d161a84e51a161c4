from .errors import AllowListRequiredError, CatalogInvariantError, ConfigMaterializationError
from .materializer import materialize
from .store import load_base_config, write_config

__all__ = [
    "AllowListRequiredError",
    "CatalogInvariantError",
    "ConfigMaterializationError",
    "load_base_config",
    "materialize",
    "write_config",
]
