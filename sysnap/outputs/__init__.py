from sysnap.outputs.base import Output
from sysnap.outputs.text import TextFileOutput

__all__ = ["Output", "TextFileOutput"]
