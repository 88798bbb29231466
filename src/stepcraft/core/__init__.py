from .Config import DEFAULT_AUTHORIZED_IMPORTS, RuntimeConfig, configure_logging
from .Exceptions import *  # noqa: F401,F403
from .Exceptions import __all__ as _exception_names
from .Parameters import ParamSpec, extract_io, json_type_matches, json_type_of
from .sentinels import NO_VAL

__all__ = [
    "DEFAULT_AUTHORIZED_IMPORTS",
    "RuntimeConfig",
    "configure_logging",
    "ParamSpec",
    "extract_io",
    "json_type_matches",
    "json_type_of",
    "NO_VAL",
    *_exception_names,
]
