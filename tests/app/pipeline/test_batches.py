"""Tests for app.pipeline.batches — intent batch submission and reconciliation."""
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.models.batch import AiBatch, BatchStatus
from app.models.lead import LeadRecord
from app.models.task import Task, TaskStatus
from app.pipeline.base import PollResult
from app.pipeline.batches import (
    ResolvedLead, UnresolvedTask, correlation_for, parse_correlation_id,
    parse_intent_score, poll_batches, reconcile_batch, submit_intent_batch,
)


def _entry(custom_id, outcome='succeeded', text=None):
    message = SimpleNamespace(content=[SimpleNamespace(type='text', text=text)]) if text is not None else None
    return SimpleNamespace(custom_id=custom_id, result=SimpleNamespace(type=outcome, message=message))


@pytest.fixture
def claimed(make_lead, make_task):
    """Three leads, each with a claimed (processing) ai_intent task."""
    leads = [make_lead(brand_id=1, lead_email=f'{n}@x.com') for n in ('a', 'b', 'c')]
    tasks = [
        make_task(status=TaskStatus.PROCESSING, lead_id=lead.id, started_at=datetime.now(),
                  payload={'prompt': f'prompt for {lead.lead_email}'})
        for lead in leads
    ]
    return leads, tasks


class TestParseIntentScore:

    @pytest.mark.parametrize('text,expected', [
        ('8', 8),
        (' 10\n', 10),
        ('Score: 3', 3),
        ('1', 1),
        ('0', None),
        ('11', None),
        ('high', None),
        ('', None),
        (None, None),
    ])
    def test_parse(self, text, expected):
        assert parse_intent_score(text) == expected


class TestCorrelationIds:

    def test_resolved_lead(self):
        assert ResolvedLead(42).custom_id == 'lead_42'
        assert parse_correlation_id('lead_42') == ResolvedLead(42)

    def test_unresolved_task(self):
        assert UnresolvedTask(7, 3).custom_id == 'task_7_3'
        assert parse_correlation_id('task_7_3') == UnresolvedTask(7, 3)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_correlation_id('something_else')

    def test_correlation_for_task(self):
        assert correlation_for(SimpleNamespace(id=5, lead_id=9), 0) == ResolvedLead(9)
        assert correlation_for(SimpleNamespace(id=5, lead_id=None), 2) == UnresolvedTask(5, 2)


class TestSubmitIntentBatch:

    def test_success_records_batch_and_handles(self, db_session, claimed, mock_anthropic):
        leads, tasks = claimed
        mock_anthropic.messages.batches.create.return_value = SimpleNamespace(id='msgbatch_1')

        handle = submit_intent_batch(db_session, tasks, 1)

        assert handle == 'msgbatch_1'
        requests = mock_anthropic.messages.batches.create.call_args[1]['requests']
        assert [r['custom_id'] for r in requests] == [f'lead_{l.id}' for l in leads]
        assert requests[0]['params']['messages'][0]['content'] == 'prompt for a@x.com'

        batch = db_session.get(AiBatch, 'msgbatch_1')
        assert batch.status == BatchStatus.PROCESSING
        assert batch.task_ids == [t.id for t in tasks]
        assert batch.lead_ids == [l.id for l in leads]
        for task in tasks:
            assert db_session.get(Task, task.id).batch_handle == 'msgbatch_1'

    def test_unresolved_tasks_use_task_ids(self, db_session, make_task, mock_anthropic):
        task = make_task(status=TaskStatus.PROCESSING, lead_id=None)
        mock_anthropic.messages.batches.create.return_value = SimpleNamespace(id='msgbatch_2')

        submit_intent_batch(db_session, [task], 1)

        requests = mock_anthropic.messages.batches.create.call_args[1]['requests']
        assert requests[0]['custom_id'] == f'task_{task.id}_0'

    def test_prompt_rebuilt_from_lead_when_missing(self, db_session, make_lead, make_task, mock_anthropic):
        lead = make_lead(conversation=[{'type': 'REPLY', 'email_body': 'Call me tomorrow'}])
        task = make_task(status=TaskStatus.PROCESSING, lead_id=lead.id, payload={})
        mock_anthropic.messages.batches.create.return_value = SimpleNamespace(id='msgbatch_3')

        submit_intent_batch(db_session, [task], 1)

        prompt = mock_anthropic.messages.batches.create.call_args[1]['requests'][0]['params']['messages'][0]['content']
        assert 'Call me tomorrow' in prompt

    def test_failure_fails_group_and_closes_leads(self, db_session, claimed, mock_anthropic):
        leads, tasks = claimed
        mock_anthropic.messages.batches.create.side_effect = RuntimeError('429 overloaded')

        assert submit_intent_batch(db_session, tasks, 1) is None

        assert db_session.execute(select(AiBatch)).scalars().all() == []
        for task in tasks:
            row = db_session.get(Task, task.id)
            assert row.status == TaskStatus.FAILED
            assert '429 overloaded' in row.error_message
        for lead in leads:
            row = db_session.get(LeadRecord, lead.id)
            assert row.processed is True
            assert row.intent is None

    def test_empty_group(self, db_session, mock_anthropic):
        assert submit_intent_batch(db_session, [], 1) is None
        mock_anthropic.messages.batches.create.assert_not_called()


@pytest.fixture
def open_batch(db_session, claimed, make_batch):
    leads, tasks = claimed
    batch = make_batch('msgbatch_9', task_ids=[t.id for t in tasks], lead_ids=[l.id for l in leads])
    for task in tasks:
        task.batch_handle = 'msgbatch_9'
    db_session.commit()
    return batch, leads, tasks


class TestPollBatches:

    def _ended(self, mock_anthropic, entries):
        mock_anthropic.messages.batches.retrieve.return_value = SimpleNamespace(processing_status='ended')
        mock_anthropic.messages.batches.results.side_effect = lambda handle: iter(entries)

    def test_ended_batch_reconciled(self, db_session, open_batch, mock_anthropic):
        batch, leads, tasks = open_batch
        self._ended(mock_anthropic, [
            _entry(f'lead_{leads[0].id}', text='8'),
            _entry(f'lead_{leads[1].id}', text='Score: 3'),
            _entry(f'lead_{leads[2].id}', outcome='errored'),
        ])

        poll = poll_batches()

        assert poll.polled == 1
        assert poll.completed == 1
        assert poll.leads_scored == 2
        assert poll.leads_unscored == 1

        intents = [db_session.get(LeadRecord, l.id).intent for l in leads]
        assert intents == [8, 3, None]
        assert all(db_session.get(LeadRecord, l.id).processed for l in leads)
        assert all(db_session.get(Task, t.id).status == TaskStatus.COMPLETED for t in tasks)
        assert db_session.get(AiBatch, 'msgbatch_9').status == BatchStatus.COMPLETED

    def test_reconcile_twice_is_noop(self, db_session, open_batch, mock_anthropic):
        batch, leads, tasks = open_batch
        self._ended(mock_anthropic, [_entry(f'lead_{l.id}', text='7') for l in leads])
        poll_batches()

        # Completed batches are not polled again
        second = poll_batches()
        assert second.polled == 0

        # Forcing a re-run of the same results changes nothing
        self._ended(mock_anthropic, [_entry(f'lead_{l.id}', text='2') for l in leads])
        again = PollResult()
        reconcile_batch(db_session, db_session.get(AiBatch, 'msgbatch_9'), again)
        assert again.leads_scored == 0
        assert [db_session.get(LeadRecord, l.id).intent for l in leads] == [7, 7, 7]

    def test_unparseable_score_is_null(self, db_session, open_batch, mock_anthropic):
        batch, leads, tasks = open_batch
        self._ended(mock_anthropic, [_entry(f'lead_{l.id}', text='maybe') for l in leads])
        poll_batches()
        assert all(db_session.get(LeadRecord, l.id).intent is None for l in leads)
        assert all(db_session.get(Task, t.id).status == TaskStatus.COMPLETED for t in tasks)

    def test_bad_result_does_not_stop_others(self, db_session, open_batch, mock_anthropic):
        batch, leads, tasks = open_batch
        self._ended(mock_anthropic, [
            _entry('garbage-id', text='9'),
            _entry(f'lead_{leads[0].id}', text='9'),
            _entry(f'lead_{leads[1].id}', text='9'),
            _entry(f'lead_{leads[2].id}', text='9'),
        ])
        poll = poll_batches()
        assert poll.leads_scored == 3

    def test_missing_results_close_out_leads(self, db_session, open_batch, mock_anthropic):
        batch, leads, tasks = open_batch
        self._ended(mock_anthropic, [_entry(f'lead_{leads[0].id}', text='6')])
        poll_batches()
        assert db_session.get(LeadRecord, leads[0].id).intent == 6
        assert db_session.get(LeadRecord, leads[1].id).processed is True
        assert db_session.get(LeadRecord, leads[1].id).intent is None

    def test_unresolved_correlation_uses_task_lead(self, db_session, make_lead, make_task, make_batch, mock_anthropic):
        lead = make_lead(lead_email='late@x.com')
        task = make_task(status=TaskStatus.PROCESSING, lead_id=lead.id, batch_handle='msgbatch_u')
        make_batch('msgbatch_u', task_ids=[task.id], lead_ids=[None])
        self._ended(mock_anthropic, [_entry(f'task_{task.id}_0', text='9')])

        poll_batches()

        assert db_session.get(LeadRecord, lead.id).intent == 9

    def test_in_progress_untouched(self, db_session, open_batch, mock_anthropic):
        batch, leads, tasks = open_batch
        mock_anthropic.messages.batches.retrieve.return_value = SimpleNamespace(processing_status='in_progress')

        poll = poll_batches()

        assert poll.still_running == 1
        assert poll.stale == []
        assert db_session.get(AiBatch, 'msgbatch_9').status == BatchStatus.PROCESSING
        assert all(db_session.get(Task, t.id).status == TaskStatus.PROCESSING for t in tasks)
        mock_anthropic.messages.batches.results.assert_not_called()

    @patch('app.pipeline.batches.notify_stale_batches')
    def test_stale_batch_flagged_not_failed(self, mock_notify, db_session, open_batch, mock_anthropic):
        batch, leads, tasks = open_batch
        batch.created_at = datetime.now() - timedelta(hours=30)
        db_session.commit()
        mock_anthropic.messages.batches.retrieve.return_value = SimpleNamespace(processing_status='in_progress')

        poll = poll_batches()

        assert poll.stale == ['msgbatch_9']
        mock_notify.assert_called_once()
        assert mock_notify.call_args[0][0][0]['task_count'] == 3
        assert db_session.get(AiBatch, 'msgbatch_9').status == BatchStatus.PROCESSING

    def test_poll_failure_skips_batch(self, db_session, open_batch, mock_anthropic):
        mock_anthropic.messages.batches.retrieve.side_effect = ConnectionError('timeout')

        poll = poll_batches()

        assert poll.poll_failures == 1
        assert db_session.get(AiBatch, 'msgbatch_9').status == BatchStatus.PROCESSING
