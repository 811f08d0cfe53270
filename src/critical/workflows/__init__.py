"""High-level exports for the critical CSS workflows."""

from .assembler import CriticalResult
from .critical import generate, generate_sync, write_targets
from .models import Dimension, Document, InlineAsset, LocalAsset, RemoteAsset, Stylesheet
from .options import CriticalOptions, get_options
from .renderer import PlaywrightRenderer, RenderRequest, Renderer

__all__ = [
    "CriticalOptions",
    "CriticalResult",
    "Dimension",
    "Document",
    "InlineAsset",
    "LocalAsset",
    "PlaywrightRenderer",
    "RemoteAsset",
    "RenderRequest",
    "Renderer",
    "Stylesheet",
    "generate",
    "generate_sync",
    "get_options",
    "write_targets",
]
