"""Tests for app.services.conversation — history parsing and prompt building."""
import json

from app.services.conversation import (
    ConversationSummary, MessageExcerpt, build_intent_prompt, clean_text,
    infer_message_type, last_reply_time, normalize_history, parse_conversation,
)


class TestCleanText:

    def test_strips_tags_and_entities(self):
        assert clean_text('<p>Hello&nbsp;<b>there</b> &amp; hi</p>') == 'Hello there & hi'

    def test_collapses_whitespace(self):
        assert clean_text('a\n\n   b\t c') == 'a b c'

    def test_caps_length(self):
        assert clean_text('x' * 1000, limit=400) == 'x' * 400

    def test_none_is_empty(self):
        assert clean_text(None) == ''

    def test_malformed_markup_does_not_raise(self):
        assert 'broken' in clean_text('<div><p>broken <b>markup')

    def test_non_string_input(self):
        assert clean_text(42) == '42'


class TestParseConversation:

    def test_empty_history(self):
        summary = parse_conversation([])
        assert summary.message_count == 0
        assert summary.reply_count == 0
        assert summary.has_replies is False
        assert summary.last_message_time is None
        assert summary.messages == []

    def test_none_history(self):
        assert parse_conversation(None) == ConversationSummary()

    def test_counts_replies(self, sample_history):
        summary = parse_conversation(sample_history)
        assert summary.message_count == 2
        assert summary.reply_count == 1
        assert summary.has_replies is True
        assert summary.last_message_time == '2026-03-02T09:30:00Z'

    def test_message_content_is_cleaned(self, sample_history):
        summary = parse_conversation(sample_history)
        assert summary.messages[0].content == 'Hi Jane, are you free this week ?'
        assert summary.messages[1].sender == 'lead@example.com'
        assert summary.conversation_length == sum(len(m.content) for m in summary.messages)

    def test_excerpts_capped_at_limit(self):
        history = [{'type': 'REPLY', 'email_body': 'word ' * 500}]
        summary = parse_conversation(history)
        assert len(summary.messages[0].content) == 400

    def test_idempotent(self, sample_history):
        assert parse_conversation(sample_history) == parse_conversation(sample_history)

    def test_type_case_insensitive(self):
        summary = parse_conversation([{'type': 'reply', 'email_body': 'ok'}])
        assert summary.reply_count == 1

    def test_skips_non_dict_entries(self):
        summary = parse_conversation(['junk', {'type': 'SENT', 'email_body': 'hi'}])
        assert summary.message_count == 1

    def test_falls_back_to_content_field(self):
        summary = parse_conversation([{'type': 'SENT', 'content': 'plain body'}])
        assert summary.messages[0].content == 'plain body'


class TestSummaryRoundTrip:

    def test_from_dict_restores_summary(self, sample_history):
        summary = parse_conversation(sample_history)
        assert ConversationSummary.from_dict(summary.to_dict()) == summary

    def test_from_dict_empty(self):
        assert ConversationSummary.from_dict(None) == ConversationSummary()


class TestNormalizeHistory:

    def test_keeps_raw_and_cleaned_body(self, sample_history):
        messages = normalize_history(sample_history, 'lead@example.com')
        assert messages[0]['email_body'].startswith('<p>')
        assert messages[0]['content'].startswith('Hi Jane')
        assert messages[0]['opened'] is True
        assert messages[1]['clicked'] is False

    def test_infers_type_when_missing(self):
        history = [{'from': 'Lead@Example.com', 'to': 'sdr@agency.com', 'email_body': 'hey'}]
        messages = normalize_history(history, 'lead@example.com')
        assert messages[0]['type'] == 'REPLY'


class TestInferMessageType:

    def test_sent_to_lead(self):
        assert infer_message_type({'from': 'a@b.com', 'to': 'lead@x.com'}, 'lead@x.com') == 'SENT'

    def test_unknown_without_tag(self):
        assert infer_message_type({'from': 'a@b.com', 'to': 'c@d.com'}, 'lead@x.com') == 'UNKNOWN'


class TestLastReplyTime:

    def test_latest_reply(self, sample_history):
        assert last_reply_time(sample_history) == '2026-03-02T09:30:00Z'

    def test_no_replies(self):
        assert last_reply_time([{'type': 'SENT', 'time': 't1'}]) is None


class TestBuildIntentPrompt:

    def test_embeds_transcript_json(self, sample_history):
        prompt = build_intent_prompt(parse_conversation(sample_history))
        assert 'RESPOND WITH ONLY A NUMBER' in prompt
        transcript = json.loads(prompt.rsplit('\n', 1)[-1])
        assert transcript[1]['type'] == 'REPLY'
        assert transcript[1]['content'].startswith('Yes')

    def test_empty_summary(self):
        prompt = build_intent_prompt(ConversationSummary())
        assert prompt.endswith('[]')

    def test_excerpt_fields(self):
        summary = ConversationSummary(
            message_count=1,
            messages=[MessageExcerpt(type='REPLY', time='t', sender='s', subject='subj', content='c')],
        )
        assert '"subject": "subj"' in build_intent_prompt(summary)
