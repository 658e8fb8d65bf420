"""lxcforge: deterministic builder for Alpine Linux LXC templates with K3s.

A fixed, linear pipeline turns a declarative configuration into a verified
template:

  - Content-addressable image cache with version resolution and checksums
  - Host / isolated-root execution contexts, selected once per build
  - Eleven ordered stages with guaranteed cleanup on every exit path
  - Reproducible packaging with sibling checksum files
  - Post-build validator with an optional functional boot check
"""

__version__ = "0.1.0"
__description__ = "Build pipeline for Alpine Linux LXC templates with a pre-installed K3s runtime"

from lxcforge.core.pipeline import BuildPipeline
from lxcforge.core.packager import Packager
from lxcforge.core.validator import Validator

__all__ = ["BuildPipeline", "Packager", "Validator", "__version__"]
