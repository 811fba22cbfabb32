"""
Logging Backends

Available backends:
- ConsoleBackend / ColorConsoleBackend: stderr output
- FileBackend: buffered file logging via aiofiles
"""

from .console import ConsoleBackend, ColorConsoleBackend
from .file import FileBackend

__all__ = [
    'ConsoleBackend',
    'ColorConsoleBackend',
    'FileBackend',
]
