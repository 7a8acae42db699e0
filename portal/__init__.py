"""Content portal backend: chat, image generation, phone auth and usage plans."""

__version__ = "0.1.0"
