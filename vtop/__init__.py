from .cache import CacheRegistry, CacheTTL, LRUCache
from .client import VtopClient
from .common import Config, config, configure_logging
from .errors import VtopError
from .service import VtopService
from .session import Session, SessionState, SessionStore

__version__ = "0.1.0"
