"""
Tests for reaction detection, original-message resolution and the reaction store.
"""

from datetime import datetime, timedelta

import pytest

from church_sms import reactions
from church_sms.reactions import (
    REACTION_PATTERNS,
    MessageResolver,
    ReactionMatcher,
    ReactionStore,
    content_hash,
    fragment_variants,
    levenshtein,
    normalize_text,
    resolve_reaction_type,
    similarity_ratio,
)
from conftest import MIKE, SAM, SAMI, YAB


@pytest.fixture
def matcher():
    return ReactionMatcher()


@pytest.fixture
def resolver(db):
    return MessageResolver(db, window_days=7, fuzzy_threshold=0.6, keyword_min_matches=2,
                           keyword_max_length=50, keyword_confidence=0.6)


class TestReactionMatcher:
    """Classification of device-generated reaction texts."""

    @pytest.mark.parametrize("body, reaction_type, device_type, fragment", [
        ('Loved “Hello everyone”', 'love', 'iphone', 'Hello everyone'),
        ('Liked "Service starts at 10"', 'like', 'iphone', 'Service starts at 10'),
        ('Disliked "Rain all weekend"', 'dislike', 'iphone', 'Rain all weekend'),
        ('Laughed at "That was hilarious"', 'laugh', 'iphone', 'That was hilarious'),
        ('Emphasized “Bring a dish to share”', 'emphasis', 'iphone', 'Bring a dish to share'),
        ('Questioned "Meeting moved to Friday"', 'question', 'iphone', 'Meeting moved to Friday'),
        ('Reacted 😂 to "Hello everyone"', 'laugh', 'android', 'Hello everyone'),
        ('Reacted with 👍 to “Hello everyone”', 'like', 'android', 'Hello everyone'),
        ('❤️ to "Hello everyone"', 'love', 'generic', 'Hello everyone'),
        ('🙏🏽 to "Please pray for my mother"', 'pray', 'generic', 'Please pray for my mother'),
        ('🙌 to "We reached the goal"', 'praise', 'generic', 'We reached the goal'),
        ('😢 to "Grandma passed away"', 'sad', 'generic', 'Grandma passed away'),
        ('😮 to "Pastor is retiring"', 'surprise', 'generic', 'Pastor is retiring'),
        ('😡 to "Someone took the van"', 'angry', 'generic', 'Someone took the van'),
        ('Amen to "God is good"', 'amen', 'generic', 'God is good'),
        ('Prayed for "Healing for Yab"', 'pray', 'generic', 'Healing for Yab'),
    ])
    def test_detects_reaction_phrasings(self, matcher, body, reaction_type, device_type, fragment):
        result = matcher.detect(body, SAMI)

        assert result is not None
        assert result['reaction_type'] == reaction_type
        assert result['device_type'] == device_type
        assert result['target_message_fragment'] == fragment
        assert result['full_pattern'] == body

    def test_sender_prefixed_quote_keeps_only_message(self, matcher):
        result = matcher.detect('Laughed at "Mike: that was funny"')

        assert result['reaction_type'] == 'laugh'
        assert result['target_message_fragment'] == 'that was funny'
        assert result['quoted_sender'] == 'Mike'
        assert result['pattern'] == 'tapback_sender_quote'

    def test_sender_prefixed_quote_generic_emoji(self, matcher):
        result = matcher.detect('❤️ to “Mike: Hello everyone”')

        assert result['pattern'] == 'emoji_to_sender_quote'
        assert result['target_message_fragment'] == 'Hello everyone'

    def test_android_sender_prefixed_quote(self, matcher):
        result = matcher.detect('Reacted 👍 to "Sam: Choir practice tonight"')

        assert result['device_type'] == 'android'
        assert result['pattern'] == 'reacted_sender_quote'
        assert result['target_message_fragment'] == 'Choir practice tonight'

    def test_glyph_comes_from_reaction_type(self, matcher):
        result = matcher.detect('😍 to "New baby photos"')

        assert result['reaction_type'] == 'love'
        assert result['emoji'] == '❤️'

    @pytest.mark.parametrize("body", [
        '',
        None,
        'Hello everyone',
        '❤️',
        '😂😂😂',
        'Loved it "the sermon" yesterday',
        'Loved " "',
        '🎉 to "Party at noon"',
        'I loved "the sermon" today',
    ])
    def test_not_a_reaction(self, matcher, body):
        assert matcher.detect(body) is None

    def test_pattern_order_is_generic_then_device_specific(self):
        categories = [pattern.device_type for pattern in REACTION_PATTERNS]
        first_seen = list(dict.fromkeys(categories))

        assert first_seen == ['generic', 'iphone', 'android']
        # Once a category ends it never reappears
        assert categories == sorted(categories, key=first_seen.index)

    def test_sender_forms_precede_plain_forms(self):
        names = [pattern.name for pattern in REACTION_PATTERNS]

        assert names.index('emoji_to_sender_quote') < names.index('emoji_to_quote')
        assert names.index('tapback_sender_quote') < names.index('tapback_quote')
        assert names.index('reacted_sender_quote') < names.index('reacted_quote')

    def test_resolve_reaction_type_lookup(self):
        assert resolve_reaction_type('Laughed  at') == 'laugh'
        assert resolve_reaction_type('❤') == 'love'
        assert resolve_reaction_type('👍🏾') == 'like'
        assert resolve_reaction_type('waved') is None
        assert resolve_reaction_type('') is None


class TestNormalization:
    def test_normalize_text(self):
        assert normalize_text('  Hello,   “Everyone”!  ') == 'hello, everyone!'
        assert normalize_text("God's  plan; (amen) :-)") == 'gods plan amen -'
        assert normalize_text('Line one\nline two') == 'line one line two'

    def test_content_hash_ignores_case_quotes_and_spacing(self):
        assert content_hash('Hello   everyone') == content_hash('hello everyone')
        assert content_hash('Hello everyone') != content_hash('Hello everyone!')

    def test_fragment_variants_split_on_last_colon(self):
        assert fragment_variants('Mike: Hello everyone') == ['mike hello everyone', 'hello everyone']
        assert fragment_variants('Hello everyone') == ['hello everyone']
        assert fragment_variants('   ') == []

    def test_levenshtein(self):
        assert levenshtein('kitten', 'sitting') == 3
        assert levenshtein('', 'abc') == 3
        assert levenshtein('same', 'same') == 0

    def test_similarity_ratio(self):
        assert similarity_ratio('abcdefghij', 'abcdefwxyz') == pytest.approx(0.6)
        assert similarity_ratio('', '') == 1.0


class TestMessageResolver:
    """Tiered exact -> fuzzy -> keyword matching."""

    def test_exact_match(self, db, resolver):
        message_id = db.create_broadcast_message(MIKE, 'Mike', 'Hello everyone')

        result = resolver.find_original_message('hello  EVERYONE', reactor_phone=SAMI)

        assert result['message']['id'] == message_id
        assert result['method'] == 'exact'
        assert result['confidence'] == 1.0
        assert result['hash'] == content_hash('Hello everyone')

    def test_exact_takes_priority_over_fuzzy(self, db, resolver):
        exact_id = db.create_broadcast_message(MIKE, 'Mike', 'Bible study tonight at seven')
        db.create_broadcast_message(YAB, 'Yab', 'Bible study tonight at seven!!')

        result = resolver.find_original_message('Bible study tonight at seven', reactor_phone=SAMI)

        assert result['method'] == 'exact'
        assert result['message']['id'] == exact_id

    def test_fuzzy_match_on_truncated_quote(self, db, resolver):
        message_id = db.create_broadcast_message(MIKE, 'Mike', 'Potluck this Sunday after service')

        result = resolver.find_original_message('Potluck this Sunday after serv…', reactor_phone=SAMI)

        assert result['method'] == 'fuzzy'
        assert result['message']['id'] == message_id
        assert 0.6 < result['confidence'] < 1.0

    def test_fuzzy_picks_highest_ratio(self, db, resolver):
        db.create_broadcast_message(MIKE, 'Mike', 'Choir practice moved to Thursday')
        best_id = db.create_broadcast_message(YAB, 'Yab', 'Choir practice moved to Tuesday')

        result = resolver.find_original_message('Choir practice moved to Tuesdy', reactor_phone=SAMI)

        assert result['method'] == 'fuzzy'
        assert result['message']['id'] == best_id

    def test_fuzzy_never_accepts_threshold_ratio(self, db, resolver):
        db.create_broadcast_message(MIKE, 'Mike', 'abcdefwxyz')

        assert resolver.find_original_message('abcdefghij', reactor_phone=SAMI) is None

    def test_fuzzy_accepts_above_threshold(self, db, resolver):
        db.create_broadcast_message(MIKE, 'Mike', 'abcdefgxyz')

        result = resolver.find_original_message('abcdefghij', reactor_phone=SAMI)

        assert result['method'] == 'fuzzy'
        assert result['confidence'] == pytest.approx(0.7)

    def test_keyword_match_for_short_fragment(self, db, resolver):
        message_id = db.create_broadcast_message(
            MIKE, 'Mike', 'Reminder: the Sunday potluck starts at noon, bring a dish to share with everyone')

        result = resolver.find_original_message('potluck sunday', reactor_phone=SAMI)

        assert result['method'] == 'keyword'
        assert result['confidence'] == 0.6
        assert result['message']['id'] == message_id

    def test_keyword_needs_two_words_when_available(self, db, resolver):
        db.create_broadcast_message(
            MIKE, 'Mike', 'Reminder: the Sunday potluck starts at noon, bring a dish to share with everyone')

        assert resolver.find_original_message('potluck friday', reactor_phone=SAMI) is None

    def test_keyword_skipped_for_long_fragment(self, db, resolver):
        db.create_broadcast_message(MIKE, 'Mike', 'Potluck on Sunday')

        fragment = 'potluck sunday ' + 'with lots of extra words that were never in the message'
        assert resolver.find_original_message(fragment, reactor_phone=SAMI) is None

    def test_sender_prefixed_fragment_matches_exactly(self, db, resolver):
        message_id = db.create_broadcast_message(MIKE, 'Mike', 'Hello everyone')

        result = resolver.find_original_message('Mike: Hello everyone', reactor_phone=SAMI)

        assert result['method'] == 'exact'
        assert result['message']['id'] == message_id

    def test_messages_outside_window_ignored(self, db, resolver):
        db.create_broadcast_message(MIKE, 'Mike', 'Hello everyone',
                                    sent_at=datetime.now() - timedelta(days=8))

        assert resolver.find_original_message('Hello everyone', reactor_phone=SAMI) is None

    def test_reactor_own_messages_ignored(self, db, resolver):
        db.create_broadcast_message(SAMI, 'Sami', 'Hello everyone')

        assert resolver.find_original_message('Hello everyone', reactor_phone=SAMI) is None

    def test_summary_digests_are_not_targets(self, db, resolver):
        db.create_broadcast_message('system', 'Reaction Summary', 'Recent reactions',
                                    message_type='reaction_summary')

        assert resolver.find_original_message('Recent reactions', reactor_phone=SAMI) is None

    def test_no_candidates(self, resolver):
        assert resolver.find_original_message('Hello everyone') is None


class TestReactionStore:
    def _resolution(self, db, message_id):
        return {'message': db.get_broadcast_message(message_id), 'method': 'exact', 'confidence': 1.0}

    def test_store_reaction(self, db, congregation, matcher):
        message_id = db.create_broadcast_message(MIKE, 'Mike', 'Hello everyone')
        reaction = matcher.detect('❤️ to "Hello everyone"')

        reaction_id = ReactionStore(db).store(congregation[SAMI], reaction, self._resolution(db, message_id))

        stored = db.get_reactions_for_message(message_id)
        assert reaction_id is not None
        assert len(stored) == 1
        assert stored[0]['reaction_type'] == 'love'
        assert stored[0]['reactor_name'] == 'Sami'
        assert stored[0]['original_message_hash'] == content_hash('Hello everyone')
        assert stored[0]['is_processed'] == 0

    @pytest.mark.parametrize("reactor", [SAM, SAMI, YAB])
    def test_same_reaction_twice_stored_once(self, db, congregation, matcher, reactor):
        message_id = db.create_broadcast_message(MIKE, 'Mike', 'Hello everyone')
        store = ReactionStore(db)
        reaction = matcher.detect('Loved "Hello everyone"')

        first = store.store(congregation[reactor], reaction, self._resolution(db, message_id))
        second = store.store(congregation[reactor], reaction, self._resolution(db, message_id))

        assert first is not None
        assert second is None
        assert len(db.get_reactions_for_message(message_id)) == 1

    def test_different_types_from_same_reactor_are_kept(self, db, congregation, matcher):
        message_id = db.create_broadcast_message(MIKE, 'Mike', 'Hello everyone')
        store = ReactionStore(db)

        store.store(congregation[SAMI], matcher.detect('Loved "Hello everyone"'), self._resolution(db, message_id))
        store.store(congregation[SAMI], matcher.detect('Liked "Hello everyone"'), self._resolution(db, message_id))

        assert len(db.get_reactions_for_message(message_id)) == 2

    def test_store_records_usage_metric(self, db, congregation, matcher):
        message_id = db.create_broadcast_message(MIKE, 'Mike', 'Hello everyone')

        ReactionStore(db).store(congregation[SAMI], matcher.detect('Loved "Hello everyone"'),
                                self._resolution(db, message_id))

        with db.connect() as conn:
            rows = conn.execute(
                "SELECT metric_value FROM system_analytics WHERE metric_name = 'reaction_stored'").fetchall()
        assert [row['metric_value'] for row in rows] == [1]


class TestResolverOnBusyWeeks:
    """A full week of traffic and long messages"""

    def test_older_message_found_behind_many_newer_ones(self, db, resolver):
        now = datetime.now()
        target_id = db.create_broadcast_message(MIKE, 'Mike', 'Potluck after service on Sunday',
                                                sent_at=now - timedelta(days=2))
        for n in range(120):
            db.create_broadcast_message(YAB, 'Yab', f'Announcement number {n}',
                                        sent_at=now - timedelta(hours=40) + timedelta(minutes=n))

        result = resolver.find_original_message('Potluck after service on Sunday', reactor_phone=SAMI)

        assert result['method'] == 'exact'
        assert result['message']['id'] == target_id

    def test_long_quote_compares_bounded_prefixes(self, db, resolver, monkeypatch):
        compared = []
        real_levenshtein = reactions.levenshtein

        def recording_levenshtein(a, b):
            compared.append((len(a), len(b)))
            return real_levenshtein(a, b)

        monkeypatch.setattr(reactions, 'levenshtein', recording_levenshtein)

        for n in range(100):
            db.create_broadcast_message(
                MIKE, 'Mike', f'Notice {n} ' + ' '.join(f'w{n}x{i}' for i in range(180)))
        target = db.get_recent_messages(since=datetime.now() - timedelta(days=1))[-1]
        quote = target['original_message'].replace('Notice', 'Notise')[:925]

        result = resolver.find_original_message(quote, reactor_phone=SAMI)

        assert result['method'] == 'fuzzy'
        assert result['message']['id'] == target['id']
        assert compared
        assert max(max(lengths) for lengths in compared) <= 100

    def test_length_gap_skips_edit_distance(self, db, resolver, monkeypatch):
        monkeypatch.setattr(reactions, 'levenshtein', lambda a, b: pytest.fail("compared hopeless candidate"))
        db.create_broadcast_message(MIKE, 'Mike', 'Choir practice is moved to Thursday evening at seven')

        assert resolver.match_fuzzy('choir', resolver.load_candidates(SAMI)) is None
