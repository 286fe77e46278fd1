import hashlib
import logging
import uuid
from datetime import datetime

import boto3
from twilio.rest import Client

from church_sms import config

logger = logging.getLogger(__name__)


class TwilioGateway:
    """Outbound SMS through Twilio; send() raises on provider errors"""

    def __init__(self, account_sid, auth_token, from_number):
        self.account_sid = account_sid
        self.from_number = from_number
        self.client = Client(account_sid, auth_token)

    def send(self, to_phone, body):
        message_obj = self.client.messages.create(
            body=body,
            from_=self.from_number,
            to=to_phone
        )
        return message_obj.sid

    def status(self):
        account = self.client.api.accounts(self.account_sid).fetch()
        return {"status": "connected", "account_status": account.status, "phone_number": self.from_number}


class MockGateway:
    """Development stand-in that accepts every message"""

    def __init__(self):
        self.sent = []

    def send(self, to_phone, body):
        sid = f"mock_sid_{uuid.uuid4().hex[:8]}"
        self.sent.append((to_phone, body))
        logger.info(f"DEVELOPMENT MODE: Mock SMS to {to_phone}: {body[:50]}...")
        return sid

    def status(self):
        return {"status": "mock", "messages_sent": len(self.sent)}


class R2Storage:
    """Cloudflare R2 (S3 compatible) object storage"""

    def __init__(self, access_key_id, secret_access_key, endpoint_url, bucket_name, public_url=None):
        self.bucket_name = bucket_name
        self.public_url = public_url
        self.client = boto3.client(
            's3',
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name='auto'
        )

    def put(self, key, content, content_type, metadata=None):
        upload_metadata = {
            'church-system': 'church-sms',
            'upload-timestamp': datetime.now().isoformat(),
            'content-hash': hashlib.sha256(content).hexdigest()
        }
        if metadata:
            upload_metadata.update(metadata)

        self.client.put_object(
            Bucket=self.bucket_name,
            Key=key,
            Body=content,
            ContentType=content_type,
            ContentDisposition='inline',
            CacheControl='public, max-age=31536000',
            Metadata=upload_metadata,
            ServerSideEncryption='AES256'
        )

        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        return self.client.generate_presigned_url(
            'get_object',
            Params={'Bucket': self.bucket_name, 'Key': key},
            ExpiresIn=31536000
        )

    def status(self):
        self.client.head_bucket(Bucket=self.bucket_name)
        return {"status": "connected", "bucket": self.bucket_name}


class MockStorage:
    """Development stand-in that keeps uploads in memory"""

    def __init__(self, base_url='https://media.local'):
        self.base_url = base_url
        self.objects = {}

    def put(self, key, content, content_type, metadata=None):
        self.objects[key] = (content, content_type, metadata or {})
        logger.info(f"DEVELOPMENT MODE: Mock upload {key} ({len(content)} bytes)")
        return f"{self.base_url}/{key}"

    def status(self):
        return {"status": "mock", "objects": len(self.objects)}


def build_gateway():
    if config.twilio_configured():
        logger.info("SUCCESS: Twilio gateway configured")
        return TwilioGateway(config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_PHONE_NUMBER)
    if not config.DEVELOPMENT_MODE:
        raise ValueError("Twilio credentials required for production")
    logger.warning("DEVELOPMENT MODE: Twilio client disabled - using mock responses")
    return MockGateway()


def build_storage():
    if config.r2_configured():
        logger.info(f"SUCCESS: Cloudflare R2 storage configured: {config.R2_BUCKET_NAME}")
        return R2Storage(
            config.R2_ACCESS_KEY_ID,
            config.R2_SECRET_ACCESS_KEY,
            config.R2_ENDPOINT_URL,
            config.R2_BUCKET_NAME,
            config.R2_PUBLIC_URL
        )
    if not config.DEVELOPMENT_MODE:
        raise ValueError("R2 credentials required for production")
    logger.warning("DEVELOPMENT MODE: R2 client disabled - using in-memory storage")
    return MockStorage()
