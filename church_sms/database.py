import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

DEFAULT_GROUPS = [
    ("YesuWay Congregation", "Main congregation group"),
    ("Church Leadership", "Leadership and admin group"),
    ("Media Team", "Media and technology team")
]

SUMMARY_MESSAGE_TYPE = 'reaction_summary'


def timestamp(dt=None):
    """Serialize a datetime the way every timestamp column stores it"""
    return (dt or datetime.now()).isoformat(sep=' ', timespec='microseconds')


def parse_timestamp(value):
    if not value:
        return None
    return datetime.fromisoformat(value)


class Database:
    """SQLite document store for members, broadcasts, deliveries and reactions"""

    def __init__(self, path):
        self.path = path
        self.init_schema()

    @contextmanager
    def connect(self):
        conn = sqlite3.connect(self.path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys=ON;')
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self):
        """Create tables and indexes, seed default groups on first start"""
        with self.connect() as conn:
            conn.execute('PRAGMA journal_mode=WAL;')
            conn.execute('PRAGMA synchronous=NORMAL;')
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS groups (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL UNIQUE,
                    description TEXT,
                    active BOOLEAN DEFAULT TRUE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS members (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    phone_number TEXT UNIQUE NOT NULL,
                    name TEXT NOT NULL,
                    is_admin BOOLEAN DEFAULT FALSE,
                    active BOOLEAN DEFAULT TRUE,
                    last_activity TIMESTAMP,
                    message_count INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS group_members (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    group_id INTEGER NOT NULL,
                    member_id INTEGER NOT NULL,
                    joined_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (group_id) REFERENCES groups (id) ON DELETE CASCADE,
                    FOREIGN KEY (member_id) REFERENCES members (id) ON DELETE CASCADE,
                    UNIQUE(group_id, member_id)
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS broadcast_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    from_phone TEXT NOT NULL,
                    from_name TEXT NOT NULL,
                    original_message TEXT NOT NULL,
                    processed_message TEXT NOT NULL,
                    message_type TEXT DEFAULT 'text',
                    media_count INTEGER DEFAULT 0,
                    large_media_count INTEGER DEFAULT 0,
                    processing_status TEXT DEFAULT 'pending',
                    delivery_status TEXT DEFAULT 'pending',
                    sent_at TIMESTAMP NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS message_reactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    original_message_id INTEGER NOT NULL,
                    original_message_hash TEXT NOT NULL,
                    reactor_phone TEXT NOT NULL,
                    reactor_name TEXT NOT NULL,
                    reaction_type TEXT NOT NULL,
                    reaction_emoji TEXT NOT NULL,
                    reaction_text TEXT NOT NULL,
                    device_type TEXT DEFAULT 'generic',
                    match_method TEXT NOT NULL,
                    confidence REAL DEFAULT 0,
                    is_processed BOOLEAN DEFAULT FALSE,
                    included_in_summary BOOLEAN DEFAULT FALSE,
                    created_at TIMESTAMP NOT NULL,
                    processed_at TIMESTAMP,
                    FOREIGN KEY (original_message_id) REFERENCES broadcast_messages (id) ON DELETE CASCADE
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS reaction_summaries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    summary_type TEXT NOT NULL,
                    summary_content TEXT NOT NULL,
                    messages_included INTEGER DEFAULT 0,
                    reactions_included INTEGER DEFAULT 0,
                    sent_at TIMESTAMP NOT NULL
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS media_files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL,
                    original_url TEXT NOT NULL,
                    r2_object_key TEXT,
                    public_url TEXT,
                    display_name TEXT,
                    file_size INTEGER,
                    mime_type TEXT,
                    file_hash TEXT,
                    upload_status TEXT DEFAULT 'pending',
                    upload_error TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (message_id) REFERENCES broadcast_messages (id) ON DELETE CASCADE
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS delivery_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL,
                    member_id INTEGER NOT NULL,
                    to_phone TEXT NOT NULL,
                    delivery_method TEXT NOT NULL,
                    delivery_status TEXT NOT NULL,
                    twilio_message_sid TEXT,
                    error_message TEXT,
                    delivery_time_ms INTEGER,
                    retry_count INTEGER DEFAULT 0,
                    delivered_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (message_id) REFERENCES broadcast_messages (id) ON DELETE CASCADE
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS system_analytics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    metric_name TEXT NOT NULL,
                    metric_value REAL NOT NULL,
                    metric_metadata TEXT,
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS performance_metrics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    operation_type TEXT NOT NULL,
                    operation_duration_ms INTEGER NOT NULL,
                    success BOOLEAN DEFAULT TRUE,
                    error_details TEXT,
                    recorded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            ''')

            indexes = [
                'CREATE INDEX IF NOT EXISTS idx_members_active ON members(active)',
                'CREATE INDEX IF NOT EXISTS idx_messages_sent_at ON broadcast_messages(sent_at)',
                'CREATE INDEX IF NOT EXISTS idx_messages_type ON broadcast_messages(message_type)',
                'CREATE UNIQUE INDEX IF NOT EXISTS idx_reactions_unique '
                'ON message_reactions(original_message_id, reactor_phone, reaction_type)',
                'CREATE INDEX IF NOT EXISTS idx_reactions_processed ON message_reactions(is_processed)',
                'CREATE INDEX IF NOT EXISTS idx_reactions_created ON message_reactions(created_at)',
                'CREATE INDEX IF NOT EXISTS idx_media_message_id ON media_files(message_id)',
                'CREATE INDEX IF NOT EXISTS idx_delivery_message_id ON delivery_log(message_id)',
                'CREATE INDEX IF NOT EXISTS idx_analytics_metric ON system_analytics(metric_name, recorded_at)',
                'CREATE INDEX IF NOT EXISTS idx_performance_type ON performance_metrics(operation_type, recorded_at)'
            ]
            for index_sql in indexes:
                cursor.execute(index_sql)

            cursor.execute("SELECT COUNT(*) FROM groups")
            if cursor.fetchone()[0] == 0:
                cursor.executemany("INSERT INTO groups (name, description) VALUES (?, ?)", DEFAULT_GROUPS)
                logger.info("✅ Default groups initialized")

        logger.info(f"✅ Database initialized: {self.path}")

    # ----- members -----

    def add_member(self, phone_number, name, is_admin=False, group_name=DEFAULT_GROUPS[0][0]):
        """Insert or refresh a member and attach them to a group"""
        with self.connect() as conn:
            cursor = conn.cursor()
            cursor.execute('''
                INSERT INTO members (phone_number, name, is_admin, active, last_activity)
                VALUES (?, ?, ?, 1, ?)
                ON CONFLICT(phone_number) DO UPDATE SET
                    name = excluded.name, is_admin = excluded.is_admin, active = 1
            ''', (phone_number, name, bool(is_admin), timestamp()))
            cursor.execute("SELECT id FROM members WHERE phone_number = ?", (phone_number,))
            member_id = cursor.fetchone()['id']

            cursor.execute("SELECT id FROM groups WHERE name = ?", (group_name,))
            group = cursor.fetchone()
            if group is None:
                cursor.execute("INSERT INTO groups (name) VALUES (?)", (group_name,))
                group_id = cursor.lastrowid
            else:
                group_id = group['id']

            cursor.execute('''
                INSERT OR IGNORE INTO group_members (group_id, member_id) VALUES (?, ?)
            ''', (group_id, member_id))
            return member_id

    def deactivate_member(self, phone_number):
        with self.connect() as conn:
            conn.execute("UPDATE members SET active = 0 WHERE phone_number = ?", (phone_number,))

    def get_member_by_phone(self, phone_number):
        with self.connect() as conn:
            row = conn.execute('''
                SELECT m.id, m.phone_number, m.name, m.is_admin, m.message_count, m.last_activity,
                       GROUP_CONCAT(gm.group_id) AS group_ids
                FROM members m
                LEFT JOIN group_members gm ON m.id = gm.member_id
                WHERE m.phone_number = ? AND m.active = 1
                GROUP BY m.id
            ''', (phone_number,)).fetchone()

        if row is None:
            return None
        return {
            'id': row['id'],
            'phone': row['phone_number'],
            'name': row['name'],
            'is_admin': bool(row['is_admin']),
            'message_count': row['message_count'],
            'last_activity': row['last_activity'],
            'groups': [int(g) for g in row['group_ids'].split(',')] if row['group_ids'] else []
        }

    def get_active_members(self, exclude_phone=None):
        """Active members that belong to at least one group"""
        query = '''
            SELECT DISTINCT m.id, m.phone_number, m.name, m.is_admin
            FROM members m
            JOIN group_members gm ON m.id = gm.member_id
            WHERE m.active = 1
        '''
        params = []
        if exclude_phone:
            query += " AND m.phone_number != ?"
            params.append(exclude_phone)
        query += " ORDER BY m.name"

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            {'id': row['id'], 'phone': row['phone_number'], 'name': row['name'], 'is_admin': bool(row['is_admin'])}
            for row in rows
        ]

    def record_member_activity(self, phone_number, now=None):
        with self.connect() as conn:
            conn.execute('''
                UPDATE members
                SET message_count = message_count + 1, last_activity = ?
                WHERE phone_number = ?
            ''', (timestamp(now), phone_number))

    # ----- broadcast messages -----

    def create_broadcast_message(self, from_phone, from_name, original_message, media_count=0,
                                 message_type='text', sent_at=None):
        with self.connect() as conn:
            cursor = conn.execute('''
                INSERT INTO broadcast_messages
                (from_phone, from_name, original_message, processed_message, message_type,
                 media_count, processing_status, delivery_status, sent_at)
                VALUES (?, ?, ?, ?, ?, ?, 'processing', 'pending', ?)
            ''', (from_phone, from_name, original_message, original_message, message_type,
                  media_count, timestamp(sent_at)))
            return cursor.lastrowid

    def complete_broadcast_processing(self, message_id, processed_message, large_media_count=0):
        with self.connect() as conn:
            conn.execute('''
                UPDATE broadcast_messages
                SET processed_message = ?, large_media_count = ?, processing_status = 'completed'
                WHERE id = ?
            ''', (processed_message, large_media_count, message_id))

    def update_broadcast_status(self, message_id, delivery_status, processing_status=None):
        with self.connect() as conn:
            if processing_status:
                conn.execute('''
                    UPDATE broadcast_messages SET delivery_status = ?, processing_status = ? WHERE id = ?
                ''', (delivery_status, processing_status, message_id))
            else:
                conn.execute('''
                    UPDATE broadcast_messages SET delivery_status = ? WHERE id = ?
                ''', (delivery_status, message_id))

    def get_broadcast_message(self, message_id):
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM broadcast_messages WHERE id = ?", (message_id,)).fetchone()
        return dict(row) if row else None

    def get_recent_messages(self, since, exclude_phone=None, limit=None):
        """Member broadcasts since a point in time, newest first; unbounded unless limit is given"""
        query = '''
            SELECT id, from_phone, from_name, original_message, sent_at
            FROM broadcast_messages
            WHERE sent_at > ? AND message_type != ?
        '''
        params = [timestamp(since), SUMMARY_MESSAGE_TYPE]
        if exclude_phone:
            query += " AND from_phone != ?"
            params.append(exclude_phone)
        query += " ORDER BY sent_at DESC, id DESC"
        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def get_last_broadcast_time(self):
        with self.connect() as conn:
            row = conn.execute('''
                SELECT MAX(sent_at) AS last_sent FROM broadcast_messages WHERE message_type != ?
            ''', (SUMMARY_MESSAGE_TYPE,)).fetchone()
        return parse_timestamp(row['last_sent'])

    # ----- media -----

    def record_media_file(self, message_id, original_url, object_key=None, public_url=None, display_name=None,
                          file_size=None, mime_type=None, file_hash=None, upload_status='completed',
                          upload_error=None):
        with self.connect() as conn:
            cursor = conn.execute('''
                INSERT INTO media_files
                (message_id, original_url, r2_object_key, public_url, display_name,
                 file_size, mime_type, file_hash, upload_status, upload_error)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (message_id, original_url, object_key, public_url, display_name,
                  file_size, mime_type, file_hash, upload_status, upload_error))
            return cursor.lastrowid

    def get_media_files(self, message_id):
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM media_files WHERE message_id = ? ORDER BY id",
                                (message_id,)).fetchall()
        return [dict(row) for row in rows]

    # ----- delivery log -----

    def log_delivery(self, message_id, member_id, to_phone, delivery_status, message_sid=None,
                     error_message=None, delivery_time_ms=0, retry_count=0, delivery_method='sms'):
        with self.connect() as conn:
            cursor = conn.execute('''
                INSERT INTO delivery_log
                (message_id, member_id, to_phone, delivery_method, delivery_status,
                 twilio_message_sid, error_message, delivery_time_ms, retry_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (message_id, member_id, to_phone, delivery_method, delivery_status,
                  message_sid, error_message, delivery_time_ms, retry_count))
            return cursor.lastrowid

    def get_delivery_logs(self, message_id):
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM delivery_log WHERE message_id = ? ORDER BY id",
                                (message_id,)).fetchall()
        return [dict(row) for row in rows]

    # ----- reactions -----

    def find_reaction(self, original_message_id, reactor_phone, reaction_type):
        with self.connect() as conn:
            row = conn.execute('''
                SELECT * FROM message_reactions
                WHERE original_message_id = ? AND reactor_phone = ? AND reaction_type = ?
            ''', (original_message_id, reactor_phone, reaction_type)).fetchone()
        return dict(row) if row else None

    def create_reaction(self, reaction, created_at=None):
        """Insert a reaction; returns the new id, or None when the dedupe key already exists"""
        with self.connect() as conn:
            cursor = conn.execute('''
                INSERT OR IGNORE INTO message_reactions
                (original_message_id, original_message_hash, reactor_phone, reactor_name,
                 reaction_type, reaction_emoji, reaction_text, device_type, match_method,
                 confidence, is_processed, included_in_summary, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?)
            ''', (
                reaction['original_message_id'], reaction['original_message_hash'],
                reaction['reactor_phone'], reaction['reactor_name'],
                reaction['reaction_type'], reaction['reaction_emoji'], reaction['reaction_text'],
                reaction.get('device_type', 'generic'), reaction['match_method'],
                reaction.get('confidence', 0.0), timestamp(created_at)
            ))
            if cursor.rowcount == 0:
                return None
            return cursor.lastrowid

    def get_unprocessed_reactions(self):
        """Pending reactions joined with their target message, oldest message first"""
        with self.connect() as conn:
            rows = conn.execute('''
                SELECT mr.id, mr.original_message_id, mr.reactor_phone, mr.reactor_name,
                       mr.reaction_type, mr.reaction_emoji, mr.device_type, mr.match_method,
                       mr.confidence, mr.created_at,
                       bm.from_name, bm.original_message, bm.sent_at
                FROM message_reactions mr
                JOIN broadcast_messages bm ON mr.original_message_id = bm.id
                WHERE mr.is_processed = 0
                ORDER BY bm.sent_at ASC, mr.created_at ASC, mr.id ASC
            ''').fetchall()
        return [dict(row) for row in rows]

    def count_unprocessed_reactions(self):
        with self.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM message_reactions WHERE is_processed = 0").fetchone()[0]

    def mark_reactions_processed(self, reaction_ids, now=None):
        """Claim pending reactions; returns the ids this call moved to processed"""
        if not reaction_ids:
            return []
        placeholders = ','.join('?' for _ in reaction_ids)
        with self.connect() as conn:
            # Write lock first so a concurrent claim cannot see the same pending rows
            conn.execute('BEGIN IMMEDIATE')
            rows = conn.execute(f'''
                SELECT id FROM message_reactions WHERE id IN ({placeholders}) AND is_processed = 0
            ''', list(reaction_ids)).fetchall()
            claimed = [row['id'] for row in rows]
            if claimed:
                conn.execute(f'''
                    UPDATE message_reactions
                    SET is_processed = 1, included_in_summary = 1, processed_at = ?
                    WHERE id IN ({','.join('?' for _ in claimed)})
                ''', [timestamp(now)] + claimed)

        logger.info(f"✅ Marked {len(claimed)} reactions as processed")
        return claimed

    def get_reactions_for_message(self, message_id):
        with self.connect() as conn:
            rows = conn.execute('''
                SELECT * FROM message_reactions WHERE original_message_id = ? ORDER BY created_at DESC
            ''', (message_id,)).fetchall()
        return [dict(row) for row in rows]

    def cleanup_old_reactions(self, days_old=30, now=None):
        """Delete processed reactions older than the retention window"""
        cutoff = (now or datetime.now()) - timedelta(days=days_old)
        with self.connect() as conn:
            cursor = conn.execute('''
                DELETE FROM message_reactions WHERE created_at < ? AND is_processed = 1
            ''', (timestamp(cutoff),))
            deleted = cursor.rowcount

        logger.info(f"🧹 Cleaned up {deleted} old reactions ({days_old}+ days old)")
        return deleted

    def get_reaction_stats(self):
        with self.connect() as conn:
            total = conn.execute("SELECT COUNT(*) FROM message_reactions").fetchone()[0]
            unprocessed = conn.execute(
                "SELECT COUNT(*) FROM message_reactions WHERE is_processed = 0").fetchone()[0]
            reactors = conn.execute(
                "SELECT COUNT(DISTINCT reactor_phone) FROM message_reactions").fetchone()[0]
            by_type = conn.execute('''
                SELECT reaction_type, COUNT(*) AS count FROM message_reactions
                GROUP BY reaction_type ORDER BY count DESC
            ''').fetchall()
            by_device = conn.execute('''
                SELECT device_type, COUNT(*) AS count FROM message_reactions
                GROUP BY device_type ORDER BY count DESC
            ''').fetchall()
            by_method = conn.execute('''
                SELECT match_method, COUNT(*) AS count FROM message_reactions
                GROUP BY match_method ORDER BY count DESC
            ''').fetchall()

        return {
            'total_reactions': total,
            'unprocessed_reactions': unprocessed,
            'processed_reactions': total - unprocessed,
            'unique_reactors': reactors,
            'reactions_by_type': {row['reaction_type']: row['count'] for row in by_type},
            'reactions_by_device': {row['device_type']: row['count'] for row in by_device},
            'reactions_by_method': {row['match_method']: row['count'] for row in by_method}
        }

    # ----- summaries and metrics -----

    def record_reaction_summary(self, summary_type, summary_content, messages_included, reactions_included,
                                now=None):
        with self.connect() as conn:
            cursor = conn.execute('''
                INSERT INTO reaction_summaries
                (summary_type, summary_content, messages_included, reactions_included, sent_at)
                VALUES (?, ?, ?, ?, ?)
            ''', (summary_type, summary_content, messages_included, reactions_included, timestamp(now)))
            return cursor.lastrowid

    def get_reaction_summaries(self, limit=10):
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM reaction_summaries ORDER BY id DESC LIMIT ?",
                                (limit,)).fetchall()
        return [dict(row) for row in rows]

    def record_analytics(self, metric_name, metric_value, metric_metadata=None):
        with self.connect() as conn:
            conn.execute('''
                INSERT INTO system_analytics (metric_name, metric_value, metric_metadata) VALUES (?, ?, ?)
            ''', (metric_name, metric_value, metric_metadata))

    def record_performance_metric(self, operation_type, duration_ms, success=True, error_details=None):
        """Record performance metrics for monitoring; never raises"""
        try:
            with self.connect() as conn:
                conn.execute('''
                    INSERT INTO performance_metrics (operation_type, operation_duration_ms, success, error_details)
                    VALUES (?, ?, ?, ?)
                ''', (operation_type, duration_ms, success, error_details))
        except sqlite3.Error as e:
            logger.error(f"❌ Performance metric recording failed: {e}")

    def get_activity_counts(self, hours=24, now=None):
        since = timestamp((now or datetime.now()) - timedelta(hours=hours))
        with self.connect() as conn:
            members = conn.execute("SELECT COUNT(*) FROM members WHERE active = 1").fetchone()[0]
            messages = conn.execute('''
                SELECT COUNT(*) FROM broadcast_messages WHERE sent_at > ? AND message_type != ?
            ''', (since, SUMMARY_MESSAGE_TYPE)).fetchone()[0]
            reactions = conn.execute(
                "SELECT COUNT(*) FROM message_reactions WHERE created_at > ?", (since,)).fetchone()[0]
            media = conn.execute(
                "SELECT COUNT(*) FROM media_files WHERE upload_status = 'completed'").fetchone()[0]

        return {
            'active_members': members,
            'recent_messages': messages,
            'recent_reactions': reactions,
            'processed_media': media
        }
