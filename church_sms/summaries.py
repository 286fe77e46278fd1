import logging
import threading
from datetime import datetime, timedelta

import schedule

from church_sms import config
from church_sms.reactions import REACTION_GLYPHS

logger = logging.getLogger(__name__)

SUMMARY_HEADERS = {
    'daily': "📊 TODAY'S REACTIONS:",
    'pause': "📊 Recent reactions:",
    'manual': "📊 Reaction summary:",
}
PREVIEW_LENGTH = 40


def message_preview(text, length=PREVIEW_LENGTH):
    if not text:
        return "📎 media"
    return text[:length] + "..." if len(text) > length else text


def describe_reactors(names):
    """Name if one reactor, both names if two, a count otherwise"""
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return f"{len(names)} people"


def group_reactions(reactions):
    """Group pending reactions by target message, then by reaction type"""
    grouped = {}
    for reaction in reactions:
        message_id = reaction['original_message_id']
        entry = grouped.setdefault(message_id, {
            'from_name': reaction['from_name'],
            'message': reaction['original_message'],
            'types': {}
        })
        names = entry['types'].setdefault(reaction['reaction_type'], [])
        if reaction['reactor_name'] not in names:
            names.append(reaction['reactor_name'])
    return grouped


def render_summary(reactions, summary_type='pause'):
    """Render one digest; returns (content, messages_included)"""
    grouped = group_reactions(reactions)
    lines = [SUMMARY_HEADERS.get(summary_type, SUMMARY_HEADERS['manual'])]

    for entry in grouped.values():
        lines.append("")
        lines.append(f"💬 {entry['from_name']}: \"{message_preview(entry['message'])}\"")
        ordered_types = sorted(entry['types'].items(), key=lambda item: len(item[1]), reverse=True)
        for reaction_type, names in ordered_types:
            lines.append(f"   {REACTION_GLYPHS.get(reaction_type, reaction_type)} {describe_reactors(names)}")

    if summary_type == 'daily':
        unique_reactors = len({reaction['reactor_phone'] for reaction in reactions})
        lines.append("")
        lines.append(f"🎯 Today's engagement: {len(reactions)} reactions from {unique_reactors} members")

    return "\n".join(lines), len(grouped)


class SummaryAggregator:
    """Turns pending reactions into one digest broadcast"""

    def __init__(self, db, coordinator):
        self.db = db
        self.coordinator = coordinator

    def run(self, summary_type='pause', now=None):
        """Summarize every unprocessed reaction; returns None when there is nothing to send"""
        reactions = self.db.get_unprocessed_reactions()
        if not reactions:
            logger.info(f"🔇 No unprocessed reactions for {summary_type} summary")
            return None

        # Claimed before sending: a failed digest delivery must not resend the same reactions,
        # and a concurrent run only summarizes what it claimed itself
        claimed = set(self.db.mark_reactions_processed([reaction['id'] for reaction in reactions], now))
        reactions = [reaction for reaction in reactions if reaction['id'] in claimed]
        if not reactions:
            logger.info(f"🔇 Reactions already summarized by another run, skipping {summary_type} summary")
            return None

        content, messages_included = render_summary(reactions, summary_type)
        reaction_ids = [reaction['id'] for reaction in reactions]
        self.db.record_reaction_summary(summary_type, content, messages_included, len(reaction_ids), now)

        delivery = self.coordinator.broadcast_summary(content)
        logger.info(f"✅ {summary_type.capitalize()} reaction summary sent - "
                    f"{messages_included} messages, {len(reaction_ids)} reactions")
        return {
            'summary': content,
            'summary_type': summary_type,
            'messages_included': messages_included,
            'reactions_included': len(reaction_ids),
            'delivery': delivery
        }


class SummaryScheduler:
    """Daily and conversation-pause reaction summaries on a background thread"""

    def __init__(self, aggregator, db, daily_time=None, check_minutes=None, silence_minutes=None,
                 min_reactions=None, retention_days=None, now_func=datetime.now, poll_seconds=30):
        self.aggregator = aggregator
        self.db = db
        self.daily_time = daily_time or config.DAILY_SUMMARY_TIME
        self.check_minutes = check_minutes or config.PAUSE_CHECK_MINUTES
        self.silence = timedelta(minutes=silence_minutes or config.SILENCE_MINUTES)
        self.min_reactions = min_reactions if min_reactions is not None else config.MIN_PENDING_REACTIONS
        self.retention_days = retention_days or config.REACTION_RETENTION_DAYS
        self.now_func = now_func
        self.poll_seconds = poll_seconds

        self.scheduler = schedule.Scheduler()
        self.scheduler.every().day.at(self.daily_time).do(self.run_daily_summary)
        self.scheduler.every(self.check_minutes).minutes.do(self.check_pause_summary)
        self.scheduler.every().day.at("03:00").do(self.cleanup_old_reactions)

        self._stop_event = threading.Event()
        self._thread = None

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name='reaction-scheduler', daemon=True)
        self._thread.start()
        logger.info(f"✅ Smart reaction scheduler started - daily summaries at {self.daily_time}, "
                    f"pause check every {self.check_minutes} min")

    def stop(self):
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("🛑 Reaction scheduler stopped")

    def _run_loop(self):
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(self.poll_seconds)

    def tick(self):
        self.scheduler.run_pending()

    def should_send_pause_summary(self, now=None):
        """True once the group has been quiet long enough and enough reactions are waiting"""
        now = now or self.now_func()
        last_broadcast = self.db.get_last_broadcast_time()
        if last_broadcast is not None and now - last_broadcast < self.silence:
            return False
        return self.db.count_unprocessed_reactions() >= self.min_reactions

    def check_pause_summary(self, now=None):
        try:
            if not self.should_send_pause_summary(now):
                return None
            logger.info("🕐 Conversation pause detected - sending reaction summary")
            return self.aggregator.run('pause', now)
        except Exception as e:
            logger.error(f"❌ Error sending pause reaction summary: {e}", exc_info=True)
            return None

    def run_daily_summary(self):
        try:
            return self.aggregator.run('daily')
        except Exception as e:
            logger.error(f"❌ Error sending daily reaction summary: {e}", exc_info=True)
            return None

    def cleanup_old_reactions(self):
        try:
            return self.db.cleanup_old_reactions(self.retention_days, self.now_func())
        except Exception as e:
            logger.error(f"❌ Reaction cleanup failed: {e}", exc_info=True)
            return 0
