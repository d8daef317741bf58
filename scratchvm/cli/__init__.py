"""CLI package exports for top-level command entry points."""

from __future__ import annotations

from .main import ScratchVMModalCLI, main

__all__ = ['ScratchVMModalCLI', 'main']
