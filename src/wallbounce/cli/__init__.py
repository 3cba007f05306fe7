"""wallbounce command-line interface.

Every command emits a single JSON envelope for reliable parsing.
"""

from wallbounce.cli.config import CLIContext
from wallbounce.cli.main import cli
from wallbounce.cli.output import emit, emit_error, emit_success

__all__ = ["CLIContext", "cli", "emit", "emit_error", "emit_success"]
