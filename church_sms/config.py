import os

# Production Configuration - All from environment variables
TWILIO_ACCOUNT_SID = os.environ.get('TWILIO_ACCOUNT_SID', '')
TWILIO_AUTH_TOKEN = os.environ.get('TWILIO_AUTH_TOKEN', '')
TWILIO_PHONE_NUMBER = os.environ.get('TWILIO_PHONE_NUMBER', '')

# Cloudflare R2 Configuration
R2_ACCESS_KEY_ID = os.environ.get('R2_ACCESS_KEY_ID', '')
R2_SECRET_ACCESS_KEY = os.environ.get('R2_SECRET_ACCESS_KEY', '')
R2_ENDPOINT_URL = os.environ.get('R2_ENDPOINT_URL', '')
R2_BUCKET_NAME = os.environ.get('R2_BUCKET_NAME', 'church-media-production')
R2_PUBLIC_URL = os.environ.get('R2_PUBLIC_URL', '')

DEVELOPMENT_MODE = os.environ.get('DEVELOPMENT_MODE', 'True').lower() == 'true'
PORT = int(os.environ.get('PORT', 5000))

DATABASE_PATH = os.environ.get('DATABASE_PATH', 'production_church.db')
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
LOG_FILE = os.environ.get('LOG_FILE', 'production_sms.log')
ROSTER_FILE = os.environ.get('ROSTER_FILE', '')

# Reaction matching
REACTION_WINDOW_DAYS = int(os.environ.get('REACTION_WINDOW_DAYS', 7))
FUZZY_MATCH_THRESHOLD = float(os.environ.get('FUZZY_MATCH_THRESHOLD', 0.6))
KEYWORD_MIN_MATCHES = int(os.environ.get('KEYWORD_MIN_MATCHES', 2))
KEYWORD_MAX_FRAGMENT_LENGTH = int(os.environ.get('KEYWORD_MAX_FRAGMENT_LENGTH', 50))
KEYWORD_CONFIDENCE = 0.6
FUZZY_COMPARE_LENGTH = int(os.environ.get('FUZZY_COMPARE_LENGTH', 100))

# Reaction summaries
DAILY_SUMMARY_TIME = os.environ.get('DAILY_SUMMARY_TIME', '20:00')
PAUSE_CHECK_MINUTES = int(os.environ.get('PAUSE_CHECK_MINUTES', 5))
SILENCE_MINUTES = int(os.environ.get('SILENCE_MINUTES', 30))
MIN_PENDING_REACTIONS = int(os.environ.get('MIN_PENDING_REACTIONS', 3))
REACTION_RETENTION_DAYS = int(os.environ.get('REACTION_RETENTION_DAYS', 30))

# Delivery
SMS_MAX_RETRIES = int(os.environ.get('SMS_MAX_RETRIES', 3))
SMS_RETRY_DELAY_SECONDS = float(os.environ.get('SMS_RETRY_DELAY_SECONDS', 1.0))
DELIVERY_WORKERS = int(os.environ.get('DELIVERY_WORKERS', 10))
MEDIA_DOWNLOAD_TIMEOUT = int(os.environ.get('MEDIA_DOWNLOAD_TIMEOUT', 60))


def twilio_configured():
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER)


def r2_configured():
    return bool(R2_ACCESS_KEY_ID and R2_SECRET_ACCESS_KEY and R2_ENDPOINT_URL)


def validate_production_config():
    """Refuse to run in production without gateway and storage credentials"""
    if DEVELOPMENT_MODE:
        return
    if not twilio_configured():
        raise SystemExit("Production requires all Twilio credentials")
    if not r2_configured():
        raise SystemExit("Production requires all R2 credentials")
