import os

import dotenv

from inference.config import DEFAULT_BASE_URL, DEFAULT_TIMEOUT

dotenv.load_dotenv()

DEFAULT_PORT = int(os.getenv('PORT') or 8032)
DEFAULT_HOST = os.getenv('HOST') or '0.0.0.0'

DEFAULT_MAX_HISTORY = int(os.getenv('LLM_DOCTOR_MAX_HISTORY') or 100)
DEFAULT_STREAM_DELAY = float(os.getenv('LLM_DOCTOR_STREAM_DELAY') or 0.05)
DEFAULT_FAKE_LATENCY = float(os.getenv('LLM_DOCTOR_FAKE_LATENCY') or 0.1)

# Upstream provider, passthrough is only enabled at startup when a key is present
DEFAULT_API_KEY = os.getenv('OPENAI_API_KEY') or None
DEFAULT_UPSTREAM_URL = os.getenv('OPENAI_BASE_URL') or DEFAULT_BASE_URL
DEFAULT_UPSTREAM_MODEL = os.getenv('OPENAI_MODEL') or None
DEFAULT_UPSTREAM_TIMEOUT = float(os.getenv('OPENAI_TIMEOUT') or DEFAULT_TIMEOUT)
