from importlib.metadata import version, PackageNotFoundError

from .application.workflows.build_manager import BuildManager
from .application.workflows.build_pipeline import IterationBuildPipeline
from .settings import BuildSettings

try:
    __version__ = version("iterbuild")
except PackageNotFoundError:
    # Package is not installed (e.g. during local development)
    __version__ = "0.1.0-local"

__all__ = [
    "BuildManager",
    "IterationBuildPipeline",
    "BuildSettings",
    "__version__",
]
