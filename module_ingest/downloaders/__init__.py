"""
module_ingest.downloaders - Fetch clients for module archives.
"""

from module_ingest.downloaders.proxy import (
    FetchResult,
    ModuleProxyClient,
    ProxyError,
    escape_module_path,
    escape_version,
)

__all__ = [
    "FetchResult",
    "ModuleProxyClient",
    "ProxyError",
    "escape_module_path",
    "escape_version",
]
