"""
buildresolver - resolves where game builds and patches can be downloaded.

The resolve subpackage holds the providers, cache and orchestrator; this
package adds configuration loading and logging.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("buildresolver")
except PackageNotFoundError:
    __version__ = "unknown"
