"""
CTC Router package: control plane for a crosstalk-cancellation audio router.
"""

__version__ = "0.3.0"

from . import geometry
from . import config_codec

__all__ = ["geometry", "config_codec"]
