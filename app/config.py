import os

# ================= IMAGE LIMITS =================
MIN_IMAGE_SIZE = int(os.getenv("MIN_IMAGE_SIZE", 10 * 1024))          # 10KB
MAX_IMAGE_SIZE = int(os.getenv("MAX_IMAGE_SIZE", 10 * 1024 * 1024))   # 10MB
SUPPORTED_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")

# ================= DECISION THRESHOLDS =================
FAKE_AUTO_REJECT = float(os.getenv("FAKE_AUTO_REJECT", "0.85"))    # > 85% fake => reject
FAKE_AUTO_APPROVE = float(os.getenv("FAKE_AUTO_APPROVE", "0.30"))  # < 30% fake => approve candidate
VISUAL_QUALITY_HIGH = int(os.getenv("VISUAL_QUALITY_HIGH", 85))
VISUAL_QUALITY_LOW = int(os.getenv("VISUAL_QUALITY_LOW", 60))

# ================= CERTIFICATION =================
TOTAL_STAGES = 7
REQUIRED_IMAGES_PER_STAGE = int(os.getenv("REQUIRED_IMAGES_PER_STAGE", 2))
CERTIFICATE_VERIFY_BASE_URL = os.getenv("CERTIFICATE_VERIFY_BASE_URL", "https://krishibarosa.com/verify/")

# ================= AUTHENTICITY ORACLE =================
HF_API_URL = os.getenv("HF_API_URL", "https://api-inference.huggingface.co/models")
HUGGINGFACE_API_TOKEN = os.getenv("HUGGINGFACE_API_TOKEN", "")
ORACLE_PRIMARY_MODEL = os.getenv("ORACLE_PRIMARY_MODEL", "umm-maybe/AI-image-detector")
ORACLE_FALLBACK_MODEL = os.getenv("ORACLE_FALLBACK_MODEL", "prithivMLmods/Deep-Fake-Detector-v2-Model")
ORACLE_TIMEOUT = float(os.getenv("ORACLE_TIMEOUT", "20"))
ORACLE_FAIL_SAFE = os.getenv("ORACLE_FAIL_SAFE", "true").lower() not in ("0", "false", "no")
ORACLE_NEUTRAL_SCORE = 0.5

# ================= LEDGER =================
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "http")   # http|memory
LEDGER_BRIDGE_URL = os.getenv("LEDGER_BRIDGE_URL", "http://localhost:9000")
LEDGER_TIMEOUT = float(os.getenv("LEDGER_TIMEOUT", "15"))

# ================= STORAGE =================
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")    # mongo|memory
MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017")
MONGO_DB = os.getenv("MONGO_DB", "krishibarosa_db")

# ================= LOGGING =================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "true").lower() not in ("0", "false", "no")
