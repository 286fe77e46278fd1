"""Reaction detection and correlation.

Phones do not send structured reactions over SMS. A tapback arrives as plain
text such as ``Loved “Hello everyone”`` or ``Reacted 😂 to "Hello everyone"``,
and the quoted text is often truncated, re-encoded or prefixed with the
original sender's name. This module

* classifies inbound text as a reaction (``ReactionMatcher``),
* finds the broadcast the quote refers to (``MessageResolver``), trying an
  exact hash match, then edit-distance similarity, then keyword overlap,
* stores the reaction once per (message, reactor, reaction type)
  (``ReactionStore``).
"""
import hashlib
import logging
import re
from collections import namedtuple
from datetime import datetime, timedelta

from church_sms import config

logger = logging.getLogger(__name__)

REACTION_GLYPHS = {
    'love': '❤️',
    'like': '👍',
    'dislike': '👎',
    'laugh': '😂',
    'surprise': '😮',
    'sad': '😢',
    'angry': '😠',
    'pray': '🙏',
    'praise': '🙌',
    'amen': '✝️',
    'emphasis': '‼️',
    'question': '❓',
}

VERB_REACTIONS = {
    'loved': 'love',
    'liked': 'like',
    'disliked': 'dislike',
    'laughed at': 'laugh',
    'emphasized': 'emphasis',
    'emphasised': 'emphasis',
    'questioned': 'question',
    'prayed for': 'pray',
    'praised': 'praise',
    'amen': 'amen',
}

EMOJI_REACTIONS = {
    '❤': 'love', '😍': 'love', '🥰': 'love', '😘': 'love', '💕': 'love', '💖': 'love', '💗': 'love',
    '👍': 'like', '👌': 'like',
    '👎': 'dislike',
    '😂': 'laugh', '🤣': 'laugh', '😆': 'laugh', '😄': 'laugh', '😁': 'laugh',
    '😮': 'surprise', '😯': 'surprise', '😲': 'surprise', '😱': 'surprise', '🤯': 'surprise',
    '😢': 'sad', '😭': 'sad', '😞': 'sad', '😔': 'sad', '🥺': 'sad',
    '😠': 'angry', '😡': 'angry', '🤬': 'angry',
    '🙏': 'pray',
    '🙌': 'praise', '👏': 'praise',
    '✝': 'amen', '⛪': 'amen', '🛐': 'amen',
    '‼': 'emphasis', '❗': 'emphasis',
    '❓': 'question', '❔': 'question', '🤔': 'question',
}

EMOJI = r'[\u203c\u2049\u2600-\u27bf\u2b50\U0001f300-\U0001faff\ufe0f\u200d]+'
QUOTE = r'["“”„\'‘’]'
SENDER = r'[^:"“”]{1,40}'
TAPBACK_VERBS = r'Loved|Liked|Disliked|Laughed at|Emphasi[sz]ed|Questioned'
CHURCH_VERBS = r'Amen|Prayed for|Praised'

ReactionPattern = namedtuple('ReactionPattern', ['device_type', 'name', 'regex', 'extractor'])


def extract_quote(match):
    return match.group('token'), match.group('quote'), None


def extract_sender_quote(match):
    """'SENDER: message' quotes keep only the trailing message segment"""
    return match.group('token'), match.group('quote'), match.group('sender').strip()


def _pattern(device_type, name, regex, extractor):
    return ReactionPattern(device_type, name, re.compile(regex, re.IGNORECASE | re.UNICODE), extractor)


# Evaluated top to bottom, first match wins. Sender-prefixed forms precede
# their plain counterparts so the sender name never leaks into the quote.
REACTION_PATTERNS = [
    _pattern('generic', 'emoji_to_sender_quote',
             rf'^(?P<token>{EMOJI})\s*to\s*{QUOTE}(?P<sender>{SENDER}):\s*(?P<quote>.+){QUOTE}\s*$',
             extract_sender_quote),
    _pattern('generic', 'emoji_to_quote',
             rf'^(?P<token>{EMOJI})\s*to\s*{QUOTE}(?P<quote>.+){QUOTE}\s*$',
             extract_quote),
    _pattern('generic', 'church_verb_quote',
             rf'^(?P<token>{CHURCH_VERBS})\s+(?:to\s+)?{QUOTE}(?P<quote>.+){QUOTE}\s*$',
             extract_quote),
    _pattern('iphone', 'tapback_sender_quote',
             rf'^(?P<token>{TAPBACK_VERBS})\s+{QUOTE}(?P<sender>{SENDER}):\s*(?P<quote>.+){QUOTE}\s*$',
             extract_sender_quote),
    _pattern('iphone', 'tapback_quote',
             rf'^(?P<token>{TAPBACK_VERBS})\s+{QUOTE}(?P<quote>.+){QUOTE}\s*$',
             extract_quote),
    _pattern('android', 'reacted_sender_quote',
             rf'^Reacted\s+(?:with\s+)?(?P<token>{EMOJI})\s+to\s+{QUOTE}(?P<sender>{SENDER}):\s*(?P<quote>.+){QUOTE}\s*$',
             extract_sender_quote),
    _pattern('android', 'reacted_quote',
             rf'^Reacted\s+(?:with\s+)?(?P<token>{EMOJI})\s+to\s+{QUOTE}(?P<quote>.+){QUOTE}\s*$',
             extract_quote),
]


def normalize_emoji(token):
    """Strip variation selectors, joiners and skin tones; keep the first glyph"""
    stripped = ''.join(
        ch for ch in token
        if ch not in ('\ufe0f', '\ufe0e', '\u200d') and not ('\U0001f3fb' <= ch <= '\U0001f3ff')
    )
    return stripped[:1]


def resolve_reaction_type(token):
    """Map a verb or emoji token to a reaction type, or None"""
    if not token:
        return None
    word = ' '.join(token.lower().split())
    if word in VERB_REACTIONS:
        return VERB_REACTIONS[word]
    return EMOJI_REACTIONS.get(normalize_emoji(token))


class ReactionMatcher:
    """Classifies inbound text as a reaction; never raises"""

    def __init__(self, patterns=None):
        self.patterns = patterns if patterns is not None else REACTION_PATTERNS

    def detect(self, message_body, sender_phone=None):
        if not message_body:
            return None
        message_body = message_body.strip()

        for pattern in self.patterns:
            match = pattern.regex.match(message_body)
            if not match:
                continue

            token, quote, quoted_sender = pattern.extractor(match)
            quote = (quote or '').strip()
            reaction_type = resolve_reaction_type(token)
            if not quote or not reaction_type:
                logger.debug(f"Pattern {pattern.name} matched without a usable token/quote")
                return None

            logger.info(f"🎯 Reaction detected ({pattern.device_type}/{pattern.name}) from {sender_phone}: "
                        f"'{reaction_type}' to message fragment: '{quote[:50]}'")
            return {
                'reaction_type': reaction_type,
                'emoji': REACTION_GLYPHS[reaction_type],
                'token': token,
                'target_message_fragment': quote,
                'quoted_sender': quoted_sender,
                'device_type': pattern.device_type,
                'pattern': pattern.name,
                'full_pattern': message_body
            }

        return None


_QUOTE_TRANSLATION = str.maketrans({
    '“': '"', '”': '"', '„': '"', '‟': '"', '″': '"',
    '‘': "'", '’': "'", '‚': "'", '‛': "'", '′': "'",
})


def normalize_quotes(text):
    return (text or '').translate(_QUOTE_TRANSLATION)


def normalize_text(text):
    """Lowercase, unify quotes, drop punctuation other than .,!?- and collapse whitespace"""
    text = normalize_quotes(text).lower()
    text = re.sub(r'[^\w\s.,!?-]', '', text)
    return re.sub(r'\s+', ' ', text).strip()


def content_hash(text):
    return hashlib.sha256(normalize_text(text).encode('utf-8')).hexdigest()


def levenshtein(a, b):
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb)
            ))
        previous = current
    return previous[-1]


def similarity_ratio(a, b):
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein(a, b)) / max_len


def fragment_variants(fragment):
    """The full fragment plus, for 'SENDER: text' quotes, the text after the last colon"""
    quoted = normalize_quotes(fragment)
    variants = [normalize_text(quoted)]
    if ':' in quoted:
        variants.append(normalize_text(quoted.rsplit(':', 1)[1]))
    unique = []
    for variant in variants:
        if variant and variant not in unique:
            unique.append(variant)
    return unique


class MessageResolver:
    """Finds the broadcast a reaction quotes: exact hash, then fuzzy, then keywords"""

    def __init__(self, db, window_days=None, fuzzy_threshold=None, keyword_min_matches=None,
                 keyword_max_length=None, keyword_confidence=None, fuzzy_compare_length=None):
        self.db = db
        self.window_days = window_days if window_days is not None else config.REACTION_WINDOW_DAYS
        self.fuzzy_threshold = fuzzy_threshold if fuzzy_threshold is not None else config.FUZZY_MATCH_THRESHOLD
        self.keyword_min_matches = (keyword_min_matches if keyword_min_matches is not None
                                    else config.KEYWORD_MIN_MATCHES)
        self.keyword_max_length = (keyword_max_length if keyword_max_length is not None
                                   else config.KEYWORD_MAX_FRAGMENT_LENGTH)
        self.keyword_confidence = (keyword_confidence if keyword_confidence is not None
                                   else config.KEYWORD_CONFIDENCE)
        self.fuzzy_compare_length = (fuzzy_compare_length if fuzzy_compare_length is not None
                                     else config.FUZZY_COMPARE_LENGTH)

    def load_candidates(self, reactor_phone=None, now=None):
        since = (now or datetime.now()) - timedelta(days=self.window_days)
        candidates = []
        for message in self.db.get_recent_messages(since, exclude_phone=reactor_phone):
            normalized = normalize_text(message['original_message'])
            if not normalized:
                continue
            candidates.append({
                'message': message,
                'normalized': normalized,
                'hash': hashlib.sha256(normalized.encode('utf-8')).hexdigest()
            })
        return candidates

    def find_original_message(self, fragment, reactor_phone=None, now=None):
        """Returns {'message', 'method', 'confidence', 'hash'} or None"""
        variants = fragment_variants(fragment)
        if not variants:
            return None

        candidates = self.load_candidates(reactor_phone, now)
        if not candidates:
            logger.info("🔍 No recent messages found for reaction matching")
            return None

        tiers = (
            ('exact', self.match_exact),
            ('fuzzy', self.match_fuzzy),
            ('keyword', self.match_keyword),
        )
        for method, tier in tiers:
            for variant in variants:
                hit = tier(variant, candidates)
                if hit:
                    candidate, confidence = hit
                    message = candidate['message']
                    logger.info(f"✅ Found reaction target via {method} (confidence {confidence:.2f}): "
                                f"Message {message['id']} from {message['from_name']}")
                    return {
                        'message': message,
                        'method': method,
                        'confidence': round(confidence, 4),
                        'hash': candidate['hash']
                    }

        logger.info(f"🔍 No target found for reaction fragment: '{fragment[:50]}'")
        return None

    def match_exact(self, variant, candidates):
        fragment_hash = hashlib.sha256(variant.encode('utf-8')).hexdigest()
        for candidate in candidates:
            if candidate['hash'] == fragment_hash:
                return candidate, 1.0
        return None

    def match_fuzzy(self, variant, candidates):
        """Edit-distance match on the leading fuzzy_compare_length characters of both texts"""
        fragment = variant[:self.fuzzy_compare_length]
        best, best_ratio = None, 0.0
        for candidate in candidates:
            text = candidate['normalized'][:self.fuzzy_compare_length]
            # The ratio can never exceed shorter/longer, skip hopeless candidates
            if min(len(fragment), len(text)) / max(len(fragment), len(text)) <= self.fuzzy_threshold:
                continue
            ratio = similarity_ratio(fragment, text)
            if ratio > best_ratio:
                best, best_ratio = candidate, ratio
        if best is not None and best_ratio > self.fuzzy_threshold:
            return best, best_ratio
        return None

    def match_keyword(self, variant, candidates):
        if len(variant) >= self.keyword_max_length:
            return None
        words = [word for word in variant.split() if len(word) > 2]
        if not words:
            return None
        required = min(len(words), self.keyword_min_matches)
        for candidate in candidates:
            hits = sum(1 for word in words if word in candidate['normalized'])
            if hits >= required:
                return candidate, self.keyword_confidence
        return None


class ReactionStore:
    """Persists resolved reactions once per (message, reactor, reaction type)"""

    def __init__(self, db):
        self.db = db

    def store(self, reactor, reaction, resolution):
        """Returns the new reaction id, or None when it was a duplicate"""
        message = resolution['message']
        reactor_phone = reactor['phone']

        existing = self.db.find_reaction(message['id'], reactor_phone, reaction['reaction_type'])
        if existing:
            logger.info(f"🔁 Duplicate reaction ignored: {reactor['name']} already reacted "
                        f"'{reaction['reaction_type']}' to message {message['id']}")
            return None

        reaction_id = self.db.create_reaction({
            'original_message_id': message['id'],
            'original_message_hash': content_hash(message['original_message']),
            'reactor_phone': reactor_phone,
            'reactor_name': reactor['name'],
            'reaction_type': reaction['reaction_type'],
            'reaction_emoji': reaction['emoji'],
            'reaction_text': reaction['full_pattern'],
            'device_type': reaction['device_type'],
            'match_method': resolution['method'],
            'confidence': resolution['confidence']
        })
        if reaction_id is None:
            logger.info(f"🔁 Duplicate reaction ignored at insert for message {message['id']}")
            return None

        self.db.record_analytics(
            'reaction_stored', 1,
            f"type:{reaction['reaction_type']},method:{resolution['method']},device:{reaction['device_type']}"
        )
        logger.info(f"🔇 Reaction stored silently: {reactor['name']} reacted {reaction['emoji']} "
                    f"to message {message['id']}")
        return reaction_id
