import logging
import traceback
from concurrent.futures import ThreadPoolExecutor

from church_sms import config
from church_sms.broadcast import NOT_REGISTERED_MESSAGE, BroadcastCoordinator, DeliveryDispatcher
from church_sms.database import Database
from church_sms.gateways import build_gateway, build_storage
from church_sms.media import MediaRehoster
from church_sms.phone import clean_phone_number
from church_sms.reactions import MessageResolver, ReactionMatcher, ReactionStore
from church_sms.retry import RetryPolicy
from church_sms.summaries import SummaryAggregator, SummaryScheduler

logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Message processing temporarily unavailable - please try again"
NO_PENDING_REACTIONS_MESSAGE = "📊 No pending reactions to summarize."

HELP_MESSAGE = ("📋 CHURCH SMS SYSTEM\n\n"
                "✅ Send messages to entire congregation\n"
                "✅ Share photos/videos (clean links, full quality)\n"
                "✅ Smart reaction tracking (silent)\n\n"
                "📱 Text HELP for this message\n"
                "🔇 Reactions are tracked silently and summarized for everyone")

ADMIN_HELP_SUFFIX = "\n\n🔑 Admin: text SUMMARY to send the reaction summary now"


class ChurchSMSSystem:
    """Entry point for inbound messages: reactions are absorbed, everything else is broadcast"""

    def __init__(self, db, gateway, storage, media_auth=None, retry_policy=None, delivery_workers=None,
                 http_session=None, scheduler_options=None):
        self.db = db
        self.gateway = gateway
        self.storage = storage

        retry_policy = retry_policy or RetryPolicy(config.SMS_MAX_RETRIES, config.SMS_RETRY_DELAY_SECONDS)
        self.dispatcher = DeliveryDispatcher(gateway, db, retry_policy)
        self.media_rehoster = MediaRehoster(
            storage, db, auth=media_auth, session=http_session,
            retry_policy=RetryPolicy(2, retry_policy.delay, retry_policy.sleep),
            timeout=config.MEDIA_DOWNLOAD_TIMEOUT
        )
        self.coordinator = BroadcastCoordinator(
            db, self.dispatcher, self.media_rehoster,
            max_workers=delivery_workers or config.DELIVERY_WORKERS
        )

        self.matcher = ReactionMatcher()
        self.resolver = MessageResolver(db)
        self.reaction_store = ReactionStore(db)
        self.aggregator = SummaryAggregator(db, self.coordinator)
        self.scheduler = SummaryScheduler(self.aggregator, db, **(scheduler_options or {}))

        self.executor = ThreadPoolExecutor(max_workers=10, thread_name_prefix='webhook')

    def start(self):
        self.scheduler.start()

    def shutdown(self):
        self.scheduler.stop()
        self.executor.shutdown(wait=True)
        self.coordinator.shutdown()

    def is_admin(self, phone_number):
        member = self.db.get_member_by_phone(clean_phone_number(phone_number))
        return bool(member and member['is_admin'])

    def process_reaction(self, member, reaction):
        """Resolve and store a reaction; returns True only when a new reaction was stored"""
        resolution = self.resolver.find_original_message(
            reaction['target_message_fragment'], reactor_phone=member['phone'])
        if not resolution:
            logger.warning(f"⚠️ Could not find target message for reaction from {member['name']}")
            return False

        return self.reaction_store.store(member, reaction, resolution) is not None

    def force_summary(self):
        result = self.aggregator.run('manual')
        if not result:
            return NO_PENDING_REACTIONS_MESSAGE
        delivery = result['delivery']
        return (f"✅ Reaction summary sent: {result['reactions_included']} reactions on "
                f"{result['messages_included']} messages\n"
                f"📊 Delivered: {delivery['sent']}/{delivery['total']}")

    def handle_incoming_message(self, from_phone, message_body, media_urls=None):
        """Returns a reply for the sender, or None when nothing should be sent back"""
        logger.info(f"📨 Incoming message from {from_phone}")

        try:
            from_phone = clean_phone_number(from_phone)
            message_body = message_body.strip() if message_body else ""
            media_urls = media_urls or []

            if media_urls:
                logger.info(f"📎 Received {len(media_urls)} media files")

            member = self.db.get_member_by_phone(from_phone)
            if not member:
                logger.warning(f"❌ Rejected message from unregistered number: {from_phone}")
                return NOT_REGISTERED_MESSAGE

            logger.info(f"👤 Sender: {member['name']} (Admin: {member['is_admin']})")

            # Reactions are detected first and never broadcast, matched or not
            reaction = self.matcher.detect(message_body, from_phone)
            if reaction:
                if self.process_reaction(member, reaction):
                    logger.info("✅ Reaction stored silently - will appear in next summary")
                return None

            command = message_body.upper()
            if command == 'HELP':
                return HELP_MESSAGE + (ADMIN_HELP_SUFFIX if member['is_admin'] else "")
            if command == 'SUMMARY' and member['is_admin']:
                return self.force_summary()

            if not message_body and not media_urls:
                logger.info(f"🔇 Empty message from {member['name']} ignored")
                return None

            logger.info("📡 Processing regular message broadcast...")
            return self.coordinator.broadcast_message(from_phone, message_body, media_urls)

        except Exception as e:
            logger.error(f"❌ Message processing error: {e}")
            traceback.print_exc()
            return UNAVAILABLE_MESSAGE

    def process_webhook_message(self, from_phone, message_body, media_urls, request_id='-'):
        """Background half of the webhook: handle the message and text back any reply"""
        try:
            response = self.handle_incoming_message(from_phone, message_body, media_urls)
            if response:
                result = self.dispatcher.send(clean_phone_number(from_phone), response)
                if result['success']:
                    logger.info(f"📤 [{request_id}] Response sent: {result['sid']}")
                else:
                    logger.error(f"❌ [{request_id}] Response failed: {result['error']}")
        except Exception as e:
            logger.error(f"❌ [{request_id}] Async processing error: {e}")
            traceback.print_exc()

    def submit_webhook_message(self, from_phone, message_body, media_urls, request_id='-'):
        return self.executor.submit(self.process_webhook_message, from_phone, message_body, media_urls, request_id)


def build_system():
    """Wire the production system from environment configuration"""
    config.validate_production_config()
    db = Database(config.DATABASE_PATH)
    media_auth = (config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN) if config.twilio_configured() else None
    return ChurchSMSSystem(db, build_gateway(), build_storage(), media_auth=media_auth)


def seed_members(db, members):
    """Register an initial roster: iterable of (phone, name, is_admin, group_name)"""
    added = 0
    for phone, name, is_admin, group_name in members:
        phone = clean_phone_number(phone)
        if not phone:
            continue
        db.add_member(phone, name, is_admin=is_admin, group_name=group_name)
        added += 1
    logger.info(f"✅ Seeded {added} members")
    return added
