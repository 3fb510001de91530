"""Tests for app.pipeline.reconcile — orphaned lead repair."""
from datetime import datetime, timedelta

from sqlalchemy import select

from app.models.task import Task, TaskStatus, TaskType
from app.pipeline.reconcile import reconcile_orphan_leads


def _intent_tasks(session):
    return session.execute(select(Task).where(Task.task_type == TaskType.AI_INTENT)).scalars().all()


class TestReconcileOrphanLeads:

    def test_requeues_orphans(self, db_session, make_lead):
        old = datetime.now() - timedelta(hours=1)
        orphan = make_lead(lead_email='orphan@x.com', created_at=old,
                           conversation=[{'type': 'REPLY', 'email_body': 'still keen'}])

        assert reconcile_orphan_leads() == 1

        tasks = _intent_tasks(db_session)
        assert len(tasks) == 1
        assert tasks[0].lead_id == orphan.id
        assert tasks[0].status == TaskStatus.PENDING
        assert 'still keen' in tasks[0].payload['prompt']

    def test_skips_leads_with_tasks(self, db_session, make_lead, make_task):
        old = datetime.now() - timedelta(hours=1)
        lead = make_lead(created_at=old)
        make_task(lead_id=lead.id, status=TaskStatus.FAILED)
        assert reconcile_orphan_leads() == 0

    def test_skips_processed_and_recent(self, db_session, make_lead):
        make_lead(lead_email='done@x.com', processed=True, created_at=datetime.now() - timedelta(hours=1))
        make_lead(lead_email='new@x.com', created_at=datetime.now())
        assert reconcile_orphan_leads() == 0

    def test_idempotent(self, db_session, make_lead):
        make_lead(created_at=datetime.now() - timedelta(hours=1))
        assert reconcile_orphan_leads() == 1
        assert reconcile_orphan_leads() == 0
