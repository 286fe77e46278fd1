import hashlib
import logging
import mimetypes
import time
from datetime import datetime

import requests

from church_sms.retry import RetryError, RetryPolicy

logger = logging.getLogger(__name__)


def generate_clean_filename(mime_type, media_index=1, file_hash='', now=None):
    """Generate an object key and a user-friendly display name like 'Photo 1'"""
    stamp = (now or datetime.now()).strftime('%Y%m%d_%H%M%S')
    mime_type = (mime_type or '').lower()

    if 'image' in mime_type:
        if 'gif' in mime_type:
            extension, base_name, display_name = '.gif', f"gif_{stamp}", f"GIF {media_index}"
        else:
            extension, base_name, display_name = '.jpg', f"photo_{stamp}", f"Photo {media_index}"
    elif 'video' in mime_type:
        extension, base_name, display_name = '.mp4', f"video_{stamp}", f"Video {media_index}"
    elif 'audio' in mime_type:
        extension, base_name, display_name = '.mp3', f"audio_{stamp}", f"Audio {media_index}"
    else:
        extension = mimetypes.guess_extension(mime_type) or '.file'
        base_name, display_name = f"file_{stamp}", f"File {media_index}"

    if media_index > 1:
        base_name += f"_{media_index}"
    if file_hash:
        base_name += f"_{file_hash[:8]}"

    return f"church/{base_name}{extension}", display_name


class MediaRehoster:
    """Downloads inbound attachments and republishes them behind public links"""

    def __init__(self, storage, db, auth=None, session=None, retry_policy=None, timeout=60):
        self.storage = storage
        self.db = db
        self.auth = auth
        self.session = session or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=2)
        self.timeout = timeout

    def download(self, media_url):
        """Download media from the inbound gateway with authentication"""
        start_time = time.time()
        logger.info(f"📥 Downloading media: {media_url}")

        try:
            response = self.session.get(media_url, auth=self.auth, timeout=self.timeout, stream=True)
            response.raise_for_status()
            content = b''.join(chunk for chunk in response.iter_content(chunk_size=8192) if chunk)
        except requests.RequestException as e:
            self.db.record_performance_metric('media_download', int((time.time() - start_time) * 1000), False, str(e))
            raise

        self.db.record_performance_metric('media_download', int((time.time() - start_time) * 1000), True)
        content_type = response.headers.get('content-type')
        logger.info(f"✅ Downloaded {len(content)} bytes, type: {content_type}")

        return {
            'content': content,
            'size': len(content),
            'mime_type': content_type,
            'hash': hashlib.sha256(content).hexdigest()
        }

    def upload(self, content, object_key, mime_type, metadata=None):
        start_time = time.time()
        logger.info(f"☁️ Uploading: {object_key}")
        try:
            public_url = self.storage.put(object_key, content, mime_type, metadata)
        except Exception as e:
            self.db.record_performance_metric('r2_upload', int((time.time() - start_time) * 1000), False, str(e))
            raise

        self.db.record_performance_metric('r2_upload', int((time.time() - start_time) * 1000), True)
        logger.info(f"✅ Upload successful: {public_url}")
        return public_url

    def rehost(self, message_id, media, media_index):
        """Download, hash, upload and record one attachment; raises RetryError on failure"""
        media_url = media.get('url', '')
        declared_type = media.get('type') or 'application/octet-stream'

        media_data, _ = self.retry_policy.run(
            lambda: self.download(media_url), f"Media {media_index} download")
        mime_type = media_data['mime_type'] or declared_type
        object_key, display_name = generate_clean_filename(mime_type, media_index, media_data['hash'])

        public_url, _ = self.retry_policy.run(
            lambda: self.upload(media_data['content'], object_key, mime_type, metadata={
                'original-size': str(media_data['size']),
                'media-index': str(media_index),
                'display-name': display_name
            }),
            f"Media {media_index} upload"
        )

        self.db.record_media_file(
            message_id, media_url, object_key=object_key, public_url=public_url,
            display_name=display_name, file_size=media_data['size'], mime_type=mime_type,
            file_hash=media_data['hash']
        )
        return {'url': public_url, 'display_name': display_name, 'type': mime_type}

    def process_media_files(self, message_id, media_urls):
        """Rehost every attachment, collecting failures instead of aborting"""
        logger.info(f"🔄 Processing {len(media_urls)} media files for message {message_id}")

        processed_links = []
        processing_errors = []

        for i, media in enumerate(media_urls, start=1):
            try:
                processed_links.append(self.rehost(message_id, media, i))
                logger.info(f"✅ Media {i} processed successfully")
            except RetryError as e:
                error_msg = f"Failed to process media {i}: {e}"
                processing_errors.append(error_msg)
                logger.error(error_msg)
                self.db.record_media_file(
                    message_id, media.get('url', ''), mime_type=media.get('type'),
                    upload_status='failed', upload_error=str(e)
                )

        logger.info(f"✅ Media processing complete: {len(processed_links)} successful, "
                    f"{len(processing_errors)} errors")
        return processed_links, processing_errors
