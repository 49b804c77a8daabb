import os

from dotenv import load_dotenv

load_dotenv(os.getenv("ENV_FILE"), override=True)

# General
PRODUCT = os.getenv("PRODUCT", "hanzicards")
VERSION = os.environ.get("VERSION", "0")
ENV = os.getenv("ENV", "dev")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")

BASE_PATH = os.path.dirname(os.path.realpath(__file__))

# Object storage (Cloudflare R2)
R2_ACCOUNT_ID = os.getenv("R2_ACCOUNT_ID")
R2_BUCKET_NAME = os.getenv("R2_BUCKET_NAME")
R2_PUBLIC_URL = os.getenv("R2_PUBLIC_URL", "")
MEDIA_NAMESPACE = os.getenv("MEDIA_NAMESPACE", "media")
LOCAL_MEDIA_ROOT = os.getenv("LOCAL_MEDIA_ROOT", "data/media")

# Providers
ELEVENLABS_VOICE_ID = os.getenv("ELEVENLABS_VOICE_ID", "")
ELEVENLABS_MODEL_ID = os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "dall-e-3")
IMAGE_SIZE = os.getenv("IMAGE_SIZE", "1024x1024")
LLM_MODEL = os.getenv("LLM_MODEL", "gpt-4o-mini")

# Dictionary
CEDICT_PATH = os.getenv("CEDICT_PATH", "data/cedict_ts.u8")

# Records
RECORDS_DIR = os.getenv("RECORDS_DIR", "data/records")
