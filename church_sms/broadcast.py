import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from church_sms.database import SUMMARY_MESSAGE_TYPE
from church_sms.retry import RetryError, RetryPolicy

logger = logging.getLogger(__name__)

NOT_REGISTERED_MESSAGE = ("You are not registered in the church SMS system. "
                          "Please contact a church administrator to be added.")
NO_RECIPIENTS_MESSAGE = "No active congregation members found for broadcast."
BROADCAST_FAILED_MESSAGE = "Broadcast failed - system administrators notified"

SUMMARY_SENDER_PHONE = 'system'
SUMMARY_SENDER_NAME = 'Reaction Summary'


def format_message_with_media(message_text, sender_name, media_links=None):
    """Sender header, body and clean media links; media-only messages carry just the links"""
    if media_links and not message_text:
        return "\n".join(f"🔗 {item['display_name']}: {item['url']}" for item in media_links)

    parts = [f"💬 {sender_name}:"]
    if message_text:
        parts.append(message_text)
    if media_links:
        media_text = "\n".join(f"🔗 {item['display_name']}: {item['url']}" for item in media_links)
        parts.append(f"\n{media_text}")
    elif not message_text:
        parts.append("📎 Shared media could not be processed")
    return "\n".join(parts)


class DeliveryDispatcher:
    """Sends one message to one recipient with bounded retries"""

    def __init__(self, gateway, db, retry_policy=None):
        self.gateway = gateway
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy()

    def send(self, to_phone, body):
        """Send with retries; returns a result dict and never raises for gateway errors"""
        start_time = time.time()
        try:
            sid, attempts = self.retry_policy.run(
                lambda: self.gateway.send(to_phone, body), f"SMS to {to_phone}")
        except RetryError as e:
            duration_ms = int((time.time() - start_time) * 1000)
            self.db.record_performance_metric('sms_send', duration_ms, False, str(e))
            logger.error(f"ERROR: All SMS attempts failed for {to_phone}: {e}")
            return {"success": False, "error": str(e), "attempts": e.attempts, "duration_ms": duration_ms}

        duration_ms = int((time.time() - start_time) * 1000)
        self.db.record_performance_metric('sms_send', duration_ms, True)
        logger.info(f"SUCCESS: SMS sent to {to_phone}: {sid}")
        return {"success": True, "sid": sid, "attempts": attempts, "duration_ms": duration_ms}

    def deliver(self, message_id, member, body):
        """Send to a member and write exactly one delivery log row for the outcome"""
        result = self.send(member['phone'], body)
        self.db.log_delivery(
            message_id, member['id'], member['phone'],
            'delivered' if result['success'] else 'failed',
            message_sid=result.get('sid'),
            error_message=result.get('error'),
            delivery_time_ms=result['duration_ms'],
            retry_count=result['attempts'] - 1
        )

        if result['success']:
            logger.info(f"✅ Delivered to {member['name']}: {result['sid']}")
        else:
            logger.error(f"❌ Failed to {member['name']}: {result['error']}")
        return result


class BroadcastCoordinator:
    """Fans a member's message out to the rest of the congregation"""

    def __init__(self, db, dispatcher, media_rehoster, max_workers=10):
        self.db = db
        self.dispatcher = dispatcher
        self.media_rehoster = media_rehoster
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='delivery')

    def shutdown(self):
        self.executor.shutdown(wait=True)

    def fan_out(self, message_id, recipients, body):
        """Deliver to every recipient concurrently and wait for all of them"""
        logger.info(f"📤 Starting concurrent delivery to {len(recipients)} recipients...")
        stats = {'sent': 0, 'failed': 0, 'total': len(recipients), 'errors': []}

        futures = {
            self.executor.submit(self.dispatcher.deliver, message_id, member, body): member
            for member in recipients
        }
        for future in as_completed(futures):
            member = futures[future]
            try:
                result = future.result()
            except Exception as e:
                stats['failed'] += 1
                stats['errors'].append(f"{member['name']}: {e}")
                logger.error(f"❌ Concurrent delivery error for {member['name']}: {e}")
                continue

            if result['success']:
                stats['sent'] += 1
            else:
                stats['failed'] += 1
                stats['errors'].append(f"{member['name']}: {result['error']}")

        return stats

    def broadcast_message(self, from_phone, message_text, media_urls=None):
        """Broadcast a member's message; returns a confirmation for admins, None otherwise"""
        start_time = time.time()
        media_urls = media_urls or []
        logger.info(f"📡 Starting broadcast from {from_phone}")

        sender = self.db.get_member_by_phone(from_phone)
        if not sender:
            logger.warning(f"❌ Broadcast rejected - unregistered number: {from_phone}")
            return NOT_REGISTERED_MESSAGE

        recipients = self.db.get_active_members(exclude_phone=from_phone)
        if not recipients:
            logger.warning("❌ No active recipients found")
            return NO_RECIPIENTS_MESSAGE

        message_id = None
        try:
            message_id = self.db.create_broadcast_message(
                from_phone, sender['name'], message_text or '',
                media_count=len(media_urls),
                message_type='media' if media_urls else 'text'
            )

            media_links = []
            if media_urls:
                media_links, processing_errors = self.media_rehoster.process_media_files(message_id, media_urls)
                if processing_errors:
                    logger.warning(f"⚠️ Media processing errors: {processing_errors}")

            final_message = format_message_with_media(message_text, sender['name'], media_links)
            self.db.complete_broadcast_processing(message_id, final_message, len(media_links))

            stats = self.fan_out(message_id, recipients, final_message)
            total_time = time.time() - start_time

            # "completed" describes the fan-out attempt, not universal success
            self.db.update_broadcast_status(message_id, 'completed')
            self.db.record_analytics(
                'broadcast_delivery_rate',
                stats['sent'] / len(recipients) * 100,
                f"sent:{stats['sent']},failed:{stats['failed']},time:{total_time:.2f}s"
            )
            self.db.record_member_activity(from_phone)
            self.db.record_performance_metric('broadcast_complete', int(total_time * 1000), True)

            logger.info(f"📊 Broadcast completed in {total_time:.2f}s: "
                        f"{stats['sent']} sent, {stats['failed']} failed")

        except Exception as e:
            logger.error(f"❌ Broadcast error: {e}", exc_info=True)
            if message_id is not None:
                self.db.update_broadcast_status(message_id, 'failed', processing_status='failed')
            return BROADCAST_FAILED_MESSAGE

        if not sender['is_admin']:
            return None

        confirmation = f"✅ Broadcast completed in {total_time:.1f}s\n"
        confirmation += f"📊 Delivered: {stats['sent']}/{len(recipients)}\n"
        if media_links:
            confirmation += f"📎 Clean media links: {len(media_links)}\n"
        if stats['failed'] > 0:
            confirmation += f"⚠️ Failed deliveries: {stats['failed']}\n"
        confirmation += "🔇 Smart reaction tracking: Active"
        return confirmation

    def broadcast_summary(self, summary_content):
        """Send a reaction digest to every active member"""
        recipients = self.db.get_active_members()
        if not recipients:
            logger.warning("❌ No active recipients for summary broadcast")
            return {'sent': 0, 'failed': 0, 'total': 0, 'errors': []}

        logger.info(f"📤 Broadcasting reaction summary to {len(recipients)} members")
        message_id = self.db.create_broadcast_message(
            SUMMARY_SENDER_PHONE, SUMMARY_SENDER_NAME, summary_content,
            message_type=SUMMARY_MESSAGE_TYPE
        )
        self.db.complete_broadcast_processing(message_id, summary_content)

        stats = self.fan_out(message_id, recipients, summary_content)
        self.db.update_broadcast_status(message_id, 'completed')

        logger.info(f"✅ Reaction summary broadcast completed: {stats['sent']} sent, {stats['failed']} failed")
        stats['message_id'] = message_id
        return stats
