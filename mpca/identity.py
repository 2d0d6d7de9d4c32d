"""
MPCA Identity

Name, version and banner shared by the CLI and the package root.
"""

__codename__ = "MPCA"
__tagline__ = "Plan it. Build it. Prove it."
__version__ = "0.3.0"

BANNER = r"""
  __  __ ____   ____    _
 |  \/  |  _ \ / ___|  / \
 | |\/| | |_) | |     / _ \
 | |  | |  __/| |___ / ___ \
 |_|  |_|_|    \____/_/   \_\
"""
