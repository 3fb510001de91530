"""
Conversation parsing — raw SmartLead message history → compact summary.

Pure functions only: no DB, no network, no clocks. Parsing the same history
twice yields identical summaries, which is what lets the queue re-run a
conversation_parse task safely.
"""
import html
import json
import logging
import re
import warnings
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from app.config import MESSAGE_EXCERPT_LIMIT

logger = logging.getLogger('services.conversation')

REPLY = 'REPLY'
SENT = 'SENT'

_TAG_RE = re.compile(r'<[^>]*>')
_WS_RE = re.compile(r'\s+')


@dataclass(frozen=True)
class MessageExcerpt:
    type: str
    time: Optional[str]
    sender: str
    subject: str
    content: str


@dataclass(frozen=True)
class ConversationSummary:
    message_count: int = 0
    last_message_time: Optional[str] = None
    reply_count: int = 0
    has_replies: bool = False
    conversation_length: int = 0
    messages: List[MessageExcerpt] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ConversationSummary':
        if not data:
            return cls()
        messages = [MessageExcerpt(**m) for m in data.get('messages') or []]
        return cls(
            message_count=data.get('message_count', len(messages)),
            last_message_time=data.get('last_message_time'),
            reply_count=data.get('reply_count', 0),
            has_replies=data.get('has_replies', False),
            conversation_length=data.get('conversation_length', 0),
            messages=messages,
        )


def clean_text(raw, limit: int = MESSAGE_EXCERPT_LIMIT) -> str:
    """
    Strip markup, decode entities, collapse whitespace, cap at `limit` chars.

    Never raises on malformed markup: BeautifulSoup is lenient, and if it
    still chokes we fall back to a regex tag strip.
    """
    if raw is None:
        return ''
    if not isinstance(raw, str):
        raw = str(raw)
    try:
        with warnings.catch_warnings():
            # Plain text that looks like a URL or filename makes bs4 chatty
            warnings.simplefilter('ignore', MarkupResemblesLocatorWarning)
            text = BeautifulSoup(raw, 'html.parser').get_text(' ')
    except Exception:
        logger.debug("BeautifulSoup failed, using regex strip", exc_info=True)
        text = html.unescape(_TAG_RE.sub(' ', raw))
    text = _WS_RE.sub(' ', text.replace('\xa0', ' ')).strip()
    return text[:limit]


def _message_type(msg: Dict[str, Any]) -> str:
    return str(msg.get('type') or '').strip().upper()


def infer_message_type(msg: Dict[str, Any], lead_email: str) -> str:
    """REPLY if the lead sent it, SENT if it went to the lead, else the tag we got."""
    lead = (lead_email or '').lower()
    sender = str(msg.get('from') or '').lower()
    recipient = str(msg.get('to') or '').lower()
    if lead and lead in sender:
        return REPLY
    if lead and lead in recipient:
        return SENT
    return _message_type(msg) or 'UNKNOWN'


def normalize_history(email_history, lead_email: str = '') -> List[Dict[str, Any]]:
    """
    Upstream `email_history` entries → the message dicts we persist.

    Keeps the raw HTML body alongside the cleaned content so the inbox can
    render either.
    """
    messages = []
    for msg in email_history or []:
        if not isinstance(msg, dict):
            continue
        msg_type = _message_type(msg)
        if not msg_type and lead_email:
            msg_type = infer_message_type(msg, lead_email)
        messages.append({
            'from': msg.get('from') or '',
            'to': msg.get('to') or '',
            'cc': msg.get('cc'),
            'type': msg_type or SENT,
            'time': msg.get('time'),
            'subject': msg.get('subject') or '',
            'email_body': msg.get('email_body') or '',
            'content': clean_text(msg.get('email_body'), limit=10_000),
            'opened': (msg.get('open_count') or 0) > 0,
            'clicked': (msg.get('click_count') or 0) > 0,
            'message_id': msg.get('message_id'),
            'email_seq_number': msg.get('email_seq_number'),
        })
    return messages


def parse_conversation(history, limit: int = MESSAGE_EXCERPT_LIMIT) -> ConversationSummary:
    """Summarize an ordered message history. Empty or None → zero counts."""
    if not history or not isinstance(history, (list, tuple)):
        return ConversationSummary()

    excerpts = []
    for msg in history:
        if not isinstance(msg, dict):
            continue
        body = msg.get('email_body')
        if body is None:
            body = msg.get('content') or msg.get('body') or ''
        excerpts.append(MessageExcerpt(
            type=_message_type(msg) or 'UNKNOWN',
            time=msg.get('time'),
            sender=str(msg.get('from') or msg.get('sender') or ''),
            subject=str(msg.get('subject') or ''),
            content=clean_text(body, limit=limit),
        ))

    if not excerpts:
        return ConversationSummary()

    reply_count = sum(1 for m in excerpts if m.type == REPLY)
    return ConversationSummary(
        message_count=len(excerpts),
        last_message_time=excerpts[-1].time,
        reply_count=reply_count,
        has_replies=reply_count > 0,
        conversation_length=sum(len(m.content) for m in excerpts),
        messages=excerpts,
    )


def last_reply_time(history) -> Optional[str]:
    """Timestamp of the most recent REPLY message, or None."""
    for msg in reversed(history or []):
        if isinstance(msg, dict) and _message_type(msg) == REPLY:
            return msg.get('time')
    return None


INTENT_PROMPT = """I run an email marketing agency and want you to classify intent based on conversation history. Just respond with a number.

Read the whole transcript and consider BOTH current engagement AND previous engagement patterns:
- If they had multiple replies but went quiet recently: still consider HIGH intent (they were engaged)
- If they're currently active and engaged: HIGH intent
- If they had some engagement but minimal: MEDIUM intent
- If they never engaged or clearly not interested: LOW intent

Scoring:
- Low intent: 1-3 (never engaged, clearly not interested)
- Medium intent: 4-7 (some engagement, lukewarm)
- High intent: 7-10 (currently engaged OR was previously engaged with multiple replies)

Here is the message history. RESPOND WITH ONLY A NUMBER.
{transcript}"""


def build_intent_prompt(summary: ConversationSummary) -> str:
    """Render the intent-classification prompt for one lead."""
    transcript = [
        {'type': m.type, 'time': m.time, 'from': m.sender, 'subject': m.subject, 'content': m.content}
        for m in summary.messages
    ]
    return INTENT_PROMPT.format(transcript=json.dumps(transcript, ensure_ascii=False))
