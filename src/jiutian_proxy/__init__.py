"""A local proxy relaying JiuTian model streams as OpenAI-style and Ollama-style APIs."""

__version__ = "0.1.0"

from .config import load_config, load_settings
from .api import app
from .auth import mint
from .decoder import UpstreamFrameDecoder
from .encoders import encode_frame
from .relay import TranslationRelay
