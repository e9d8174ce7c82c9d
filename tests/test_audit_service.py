# tests/test_audit_service.py
from stackpilot.services.audit_service import AuditService, RequestContext, SYSTEM_CONTEXT


class TestAuditService:

    def test_record_fills_request_context(self, app, user_ctx):
        event = AuditService.record(user_ctx, 'start_app', 'app', 7, 'shop', detail='Duration: 60m')

        assert event.id is not None
        assert event.actor == 'bob'
        assert event.ip_address == '10.1.1.2'
        assert event.user_agent == 'pytest'
        assert event.outcome == 'success'
        assert event.timestamp is not None

    def test_system_context(self, app):
        event = AuditService.record(SYSTEM_CONTEXT, 'stop_app', 'app', 7, 'shop')

        assert event.actor == 'system'
        assert SYSTEM_CONTEXT.is_system
        assert not RequestContext(actor='bob').is_system

    def test_long_user_agent_is_cut(self, app):
        ctx = RequestContext(actor='bob', user_agent='x' * 1000)

        event = AuditService.record(ctx, 'start_app', 'app', 1)

        assert len(event.user_agent) == 255

    def test_list_events_newest_first_with_filters(self, app, user_ctx, admin_ctx):
        for i in range(5):
            AuditService.record(user_ctx, 'start_app', 'app', 1, detail=str(i))
        AuditService.record(admin_ctx, 'create_server', 'server', 1)

        events, total = AuditService.list_events(actor='bob', per_page=2, page=1)

        assert total == 5
        assert [e.detail for e in events] == ['4', '3']

        events, total = AuditService.list_events(actor='bob', per_page=2, page=3)
        assert [e.detail for e in events] == ['0']

        events, total = AuditService.list_events(resource_type='server')
        assert total == 1
        assert events[0].actor == 'alice'

    def test_history_in_write_order(self, app, user_ctx):
        AuditService.record(user_ctx, 'start_app', 'app', 3, outcome='pending')
        AuditService.record(user_ctx, 'start_app', 'app', 3, outcome='success')
        AuditService.record(user_ctx, 'start_app', 'app', 4)

        history = AuditService.history('app', 3)

        assert [e.outcome for e in history] == ['pending', 'success']
