# tests/test_orchestrator.py
"""
Тесты для Orchestrator.

Покрывает:
- start/stop и связанный инвариант running <=> дедлайн в планировщике
- Отказ второго параллельного запроса без удаленного вызова
- Идемпотентную остановку
- Однократное срабатывание дедлайна после сокращения времени
- Сценарии: автоостановка, offline сервер, ошибка команды, пересчет дедлайна
- Восстановление после перезапуска и остановку процесса
"""
import threading
import time
from datetime import timedelta

import pytest

from stackpilot import db
from stackpilot.core.errors import (
    AlreadyRunning, NotRunning, ConcurrencyRejected, ServerOffline, ExecutionFailed,
    Timeout, NotFound, ValidationError, ResourceInUse, InvalidTransition
)
from stackpilot.models.application import Application
from stackpilot.models.audit_event import AuditEvent
from stackpilot.services.audit_service import AuditService
from stackpilot.services.remote_executor import ExecResult, RemoteConnectionError, RemoteTimeout

from conftest import T0, UP_COMMAND, DOWN_COMMAND, PROBE_COMMAND, PRIVATE_KEY, reload


def app_history(app_id):
    return [(e.actor, e.action, e.outcome) for e in AuditService.history('app', app_id)
            if e.action in ('start_app', 'stop_app')]


def assert_deadline_table_matches(scheduler):
    """Для всех приложений: running <=> дедлайн зарегистрирован, и дедлайны совпадают"""
    db.session.expire_all()
    for app in Application.query.all():
        assert (app.state == 'running') == scheduler.has(app.id), f"{app.name}: {app.state}"
        if app.state == 'running':
            assert scheduler.get(app.id) == app.deadline_at


class TestStart:

    def test_start_transitions_to_running(self, orchestrator, scheduler, executor, application, user_ctx):
        result = orchestrator.start(application.id, user_ctx)

        assert result['duration_granted_minutes'] == 60
        assert result['deadline_at'] == T0 + timedelta(minutes=60)
        assert application.state == 'running'
        assert application.started_at == T0
        assert scheduler.get(application.id) == T0 + timedelta(minutes=60)

        assert executor.commands() == [UP_COMMAND]
        target, working_directory, _ = executor.calls[0]
        assert working_directory == '/srv/shop'
        assert target.host == '10.0.0.5'
        assert target.user == 'deploy'

    def test_start_writes_pending_then_success(self, orchestrator, application, user_ctx):
        orchestrator.start(application.id, user_ctx)

        assert app_history(application.id) == [
            ('bob', 'start_app', 'pending'),
            ('bob', 'start_app', 'success'),
        ]
        last = AuditService.history('app', application.id)[-1]
        assert 'Duration: 60m' in last.detail
        assert last.ip_address == '10.1.1.2'

    def test_start_already_running(self, orchestrator, executor, application, user_ctx):
        orchestrator.start(application.id, user_ctx)

        with pytest.raises(AlreadyRunning):
            orchestrator.start(application.id, user_ctx)

        assert executor.count(UP_COMMAND) == 1

    def test_start_unknown_app(self, orchestrator, user_ctx):
        with pytest.raises(NotFound):
            orchestrator.start(999, user_ctx)

    def test_start_in_transient_state_rejected(self, orchestrator, executor, application, user_ctx):
        """Запись в starting без активной операции (например, после сбоя) не запускается повторно."""
        application.state = 'starting'
        db.session.commit()

        with pytest.raises(ConcurrencyRejected):
            orchestrator.start(application.id, user_ctx)
        assert executor.calls == []

    def test_start_from_error_is_allowed(self, orchestrator, executor, application, user_ctx):
        executor.results[UP_COMMAND] = ExecResult(exit_code=1, stdout='', stderr='boom')
        with pytest.raises(ExecutionFailed):
            orchestrator.start(application.id, user_ctx)
        assert application.state == 'error'

        del executor.results[UP_COMMAND]
        orchestrator.start(application.id, user_ctx)

        assert application.state == 'running'
        assert application.last_error is None

    def test_unknown_reachability_is_checked_first(self, orchestrator, executor, server, application, user_ctx):
        server.reachability = 'unknown'
        db.session.commit()

        orchestrator.start(application.id, user_ctx)

        assert executor.commands() == [PROBE_COMMAND, UP_COMMAND]
        assert reload(server).reachability == 'online'

    def test_unknown_reachability_probe_fails(self, orchestrator, executor, server, application, user_ctx):
        server.reachability = 'unknown'
        db.session.commit()
        executor.results[PROBE_COMMAND] = RemoteConnectionError('Connection refused')

        with pytest.raises(ServerOffline):
            orchestrator.start(application.id, user_ctx)

        assert executor.commands() == [PROBE_COMMAND]
        assert reload(application).state == 'stopped'

    def test_timeout_parks_in_error(self, orchestrator, scheduler, executor, application, user_ctx):
        executor.results[UP_COMMAND] = RemoteTimeout("Команда не завершилась за 300s")

        with pytest.raises(Timeout) as exc_info:
            orchestrator.start(application.id, user_ctx)

        assert 'remote result unknown' in exc_info.value.message
        assert application.state == 'error'
        assert 'remote result unknown' in application.last_error
        assert not scheduler.has(application.id)
        assert app_history(application.id)[-1] == ('bob', 'start_app', 'failed')

    def test_transport_error_is_execution_failed(self, orchestrator, executor, application, user_ctx):
        executor.results[UP_COMMAND] = RemoteConnectionError('Connection reset by peer')

        with pytest.raises(ExecutionFailed):
            orchestrator.start(application.id, user_ctx)

        assert application.state == 'error'

    def test_output_is_truncated(self, orchestrator, executor, application, user_ctx):
        orchestrator.output_limit = 10
        executor.results[UP_COMMAND] = ExecResult(exit_code=2, stdout='', stderr='x' * 100 + 'tail-error')

        with pytest.raises(ExecutionFailed) as exc_info:
            orchestrator.start(application.id, user_ctx)

        assert exc_info.value.output == '...tail-error'

    def test_notifier_receives_transitions(self, orchestrator, application, user_ctx):
        calls = []

        class RecordingNotifier:
            def notify(self, app_id, app_name, from_state, to_state, actor, detail=None):
                calls.append((from_state, to_state, actor))

        orchestrator.notifier = RecordingNotifier()
        orchestrator.start(application.id, user_ctx)

        assert calls == [('stopped', 'starting', 'bob'), ('starting', 'running', 'bob')]


class TestStop:

    def test_stop_running_app(self, orchestrator, scheduler, executor, clock, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        clock.advance(minutes=7)

        result = orchestrator.stop(application.id, user_ctx)

        assert result['noop'] is False
        assert application.state == 'stopped'
        assert application.started_at is None
        assert application.deadline_at is None
        assert not scheduler.has(application.id)
        assert executor.commands() == [UP_COMMAND, DOWN_COMMAND]
        assert 'Duration: 7m' in AuditService.history('app', application.id)[-1].detail

    def test_stop_is_idempotent(self, orchestrator, executor, application, user_ctx):
        orchestrator.start(application.id, user_ctx)

        orchestrator.stop(application.id, user_ctx)
        second = orchestrator.stop(application.id, user_ctx)

        assert second['noop'] is True
        assert executor.count(DOWN_COMMAND) == 1
        assert application.state == 'stopped'

    def test_stop_of_stopped_app_makes_no_remote_call(self, orchestrator, executor, application, user_ctx):
        result = orchestrator.stop(application.id, user_ctx)

        assert result['noop'] is True
        assert executor.calls == []

    def test_strict_stop_raises_not_running(self, orchestrator, application, user_ctx):
        with pytest.raises(NotRunning):
            orchestrator.stop(application.id, user_ctx, strict=True)

    def test_stop_failure_parks_in_error(self, orchestrator, scheduler, executor, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        executor.results[DOWN_COMMAND] = RemoteConnectionError('No route to host')

        with pytest.raises(ExecutionFailed):
            orchestrator.stop(application.id, user_ctx)

        assert application.state == 'error'
        assert application.started_at is None
        assert not scheduler.has(application.id)

    def test_stop_from_error(self, orchestrator, executor, application, user_ctx):
        application.state = 'error'
        application.last_error = 'old failure'
        db.session.commit()

        orchestrator.stop(application.id, user_ctx)

        assert executor.commands() == [DOWN_COMMAND]
        assert application.state == 'stopped'
        assert application.last_error is None


class TestConcurrency:

    def test_concurrent_starts_make_one_remote_call(self, app, orchestrator, executor, application, user_ctx):
        app_id = application.id
        executor.gate = threading.Event()
        results = {}

        def worker():
            with app.app_context():
                try:
                    results['first'] = orchestrator.start(app_id, user_ctx)
                except Exception as e:
                    results['first'] = e

        thread = threading.Thread(target=worker)
        thread.start()
        try:
            assert executor.entered.wait(5)
            for _ in range(5):
                with pytest.raises(ConcurrencyRejected):
                    orchestrator.start(app_id, user_ctx)
            with pytest.raises(ConcurrencyRejected):
                orchestrator.stop(app_id, user_ctx)
        finally:
            executor.gate.set()
            thread.join(5)

        assert isinstance(results['first'], dict)
        assert executor.count(UP_COMMAND) == 1
        assert reload(application).state == 'running'

    def test_operations_on_different_apps_are_independent(self, app, orchestrator, executor,
                                                          admin_ctx, user_ctx, project, server, application):
        app_id = application.id
        other_id = orchestrator.create_application(admin_ctx, project.id, server.id, 'blog', '/srv/blog').id
        executor.gate = threading.Event()

        def worker():
            with app.app_context():
                orchestrator.start(app_id, user_ctx)

        thread = threading.Thread(target=worker)
        thread.start()
        try:
            assert executor.entered.wait(5)
            assert app_id in orchestrator.in_flight()
            # Операция над первым приложением не блокирует второе
            result = orchestrator.update_auto_stop_minutes(other_id, 5, user_ctx)
            assert result['auto_stop_minutes'] == 5
            assert orchestrator.stop(other_id, user_ctx)['noop'] is True
        finally:
            executor.gate.set()
            thread.join(5)

        assert executor.count(UP_COMMAND) == 1


class TestAutoStop:

    def test_deadline_stops_app_as_system(self, orchestrator, scheduler, executor, clock, application, user_ctx):
        """Автоостановка через минуту после запуска."""
        orchestrator.update_auto_stop_minutes(application.id, 1, user_ctx)
        orchestrator.start(application.id, user_ctx)

        clock.advance(seconds=30)
        assert scheduler.fire_due(clock()) == 0

        clock.advance(seconds=31)
        assert scheduler.fire_due(clock()) == 1

        reload(application)
        assert application.state == 'stopped'
        assert not scheduler.has(application.id)
        assert executor.count(DOWN_COMMAND) == 1
        assert app_history(application.id)[-2:] == [
            ('system', 'stop_app', 'pending'),
            ('system', 'stop_app', 'success'),
        ]

    def test_update_recomputes_from_original_start(self, orchestrator, scheduler, clock, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        clock.advance(minutes=5)

        result = orchestrator.update_auto_stop_minutes(application.id, 10, user_ctx)

        assert application.deadline_at == T0 + timedelta(minutes=10)
        assert scheduler.get(application.id) == T0 + timedelta(minutes=10)
        assert result['remaining_seconds'] == 5 * 60

    def test_extension_keeps_elapsed_time(self, orchestrator, scheduler, clock, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        clock.advance(minutes=50)

        orchestrator.update_auto_stop_minutes(application.id, 90, user_ctx)

        assert scheduler.get(application.id) == T0 + timedelta(minutes=90)

    def test_shortening_fires_exactly_once(self, orchestrator, scheduler, executor, clock, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        clock.advance(minutes=5)
        orchestrator.update_auto_stop_minutes(application.id, 1, user_ctx)

        assert scheduler.fire_due(clock()) == 1
        assert scheduler.fire_due(clock()) == 0
        clock.advance(hours=2)
        assert scheduler.fire_due(clock()) == 0

        assert executor.count(DOWN_COMMAND) == 1
        assert reload(application).state == 'stopped'

    def test_update_of_stopped_app_only_changes_setting(self, orchestrator, scheduler, application, user_ctx):
        orchestrator.update_auto_stop_minutes(application.id, 15, user_ctx)

        assert application.auto_stop_minutes == 15
        assert application.deadline_at is None
        assert not scheduler.has(application.id)

    @pytest.mark.parametrize('minutes', [0, -5, 'ten', True, 100000])
    def test_invalid_minutes(self, orchestrator, application, user_ctx, minutes):
        with pytest.raises(ValidationError):
            orchestrator.update_auto_stop_minutes(application.id, minutes, user_ctx)

    def test_stale_deadline_is_noop_after_extension(self, orchestrator, scheduler, executor, clock,
                                                   application, user_ctx):
        """Дедлайн сработал, но пока ждали блокировку, время продлили."""
        orchestrator.start(application.id, user_ctx)
        clock.advance(minutes=61)
        scheduler.pop_due(clock())
        orchestrator.update_auto_stop_minutes(application.id, 120, user_ctx)

        assert orchestrator.stop_on_deadline(application.id) is None

        assert application.state == 'running'
        assert executor.count(DOWN_COMMAND) == 0
        assert scheduler.get(application.id) == T0 + timedelta(minutes=120)

    def test_deadline_after_manual_stop_is_noop(self, orchestrator, executor, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        orchestrator.stop(application.id, user_ctx)

        assert orchestrator.stop_on_deadline(application.id) is None
        assert executor.count(DOWN_COMMAND) == 1

    def test_failed_auto_stop_is_not_retried(self, orchestrator, scheduler, executor, clock, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        executor.results[DOWN_COMMAND] = ExecResult(exit_code=1, stdout='', stderr='compose file missing')
        clock.advance(minutes=61)

        assert scheduler.fire_due(clock()) == 1

        assert reload(application).state == 'error'
        assert not scheduler.has(application.id)
        clock.advance(hours=1)
        assert scheduler.fire_due(clock()) == 0
        assert executor.count(DOWN_COMMAND) == 1

    def test_simultaneous_deadlines_stop_in_parallel(self, orchestrator, scheduler, executor, clock,
                                                      admin_ctx, user_ctx, project, server, application):
        other_id = orchestrator.create_application(admin_ctx, project.id, server.id, 'blog', '/srv/blog',
                                                   auto_stop_minutes=60).id
        orchestrator.start(application.id, user_ctx)
        orchestrator.start(other_id, user_ctx)
        executor.gate = threading.Event()
        clock.advance(minutes=61)

        thread = threading.Thread(target=scheduler.fire_due, args=(clock(),))
        thread.start()
        try:
            give_up = time.time() + 5
            while executor.count(DOWN_COMMAND) < 2 and time.time() < give_up:
                time.sleep(0.01)
            # Обе остановки дошли до сервера, пока первая еще не завершилась
            assert executor.count(DOWN_COMMAND) == 2
        finally:
            executor.gate.set()
            thread.join(10)

        db.session.expire_all()
        assert db.session.get(Application, application.id).state == 'stopped'
        assert db.session.get(Application, other_id).state == 'stopped'
        assert scheduler.snapshot() == {}

    def test_deadline_table_follows_every_transition(self, orchestrator, scheduler, executor, clock,
                                                    admin_ctx, user_ctx, project, server, application):
        orchestrator.create_application(admin_ctx, project.id, server.id, 'blog', '/srv/blog')
        app_id = application.id
        assert_deadline_table_matches(scheduler)

        orchestrator.start(app_id, user_ctx)
        assert_deadline_table_matches(scheduler)

        clock.advance(minutes=5)
        orchestrator.update_auto_stop_minutes(app_id, 1, user_ctx)
        assert_deadline_table_matches(scheduler)

        assert scheduler.fire_due(clock()) == 1
        assert_deadline_table_matches(scheduler)

        executor.results[UP_COMMAND] = ExecResult(exit_code=1, stdout='', stderr='pull access denied')
        with pytest.raises(ExecutionFailed):
            orchestrator.start(app_id, user_ctx)
        assert_deadline_table_matches(scheduler)

        del executor.results[UP_COMMAND]
        orchestrator.start(app_id, user_ctx)
        assert_deadline_table_matches(scheduler)

        executor.results[DOWN_COMMAND] = ExecResult(exit_code=1, stdout='', stderr='compose file missing')
        with pytest.raises(ExecutionFailed):
            orchestrator.stop(app_id, user_ctx)
        assert_deadline_table_matches(scheduler)

        del executor.results[DOWN_COMMAND]
        orchestrator.stop(app_id, user_ctx)
        assert_deadline_table_matches(scheduler)

        assert db.session.get(Application, app_id).state == 'stopped'
        assert executor.count(DOWN_COMMAND) == 3


class TestScenarios:

    def test_offline_server_start_has_no_side_effects(self, orchestrator, scheduler, executor, server,
                                                     application, user_ctx):
        server.reachability = 'offline'
        db.session.commit()

        with pytest.raises(ServerOffline):
            orchestrator.start(application.id, user_ctx)

        assert executor.calls == []
        assert reload(application).state == 'stopped'
        assert not scheduler.has(application.id)
        assert app_history(application.id) == [('bob', 'start_app', 'failed')]

    def test_failing_compose_parks_in_error_with_output(self, orchestrator, scheduler, executor,
                                                        application, user_ctx):
        executor.results[UP_COMMAND] = ExecResult(
            exit_code=1, stdout='', stderr='ERROR: no such file docker-compose.yml'
        )

        with pytest.raises(ExecutionFailed) as exc_info:
            orchestrator.start(application.id, user_ctx)

        assert 'no such file' in exc_info.value.output
        assert application.state == 'error'
        assert application.started_at is None
        assert not scheduler.has(application.id)
        assert app_history(application.id)[-1] == ('bob', 'start_app', 'failed')


class TestQueries:

    def test_get_state(self, orchestrator, clock, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        clock.advance(minutes=20)

        state = orchestrator.get_state(application.id)

        assert state['state'] == 'running'
        assert state['remaining_seconds'] == 40 * 60
        assert state['deadline_scheduled'] is True
        assert state['operation_in_progress'] is False

    def test_list_by_project_and_server(self, orchestrator, admin_ctx, project, server, application):
        from stackpilot.services.project_service import ProjectService
        other_project = ProjectService.create(admin_ctx, 'internal')
        orchestrator.create_application(admin_ctx, other_project.id, server.id, 'wiki', '/srv/wiki')

        assert [a.name for a in orchestrator.list_by_project(project.id)] == ['shop']
        assert [a.name for a in orchestrator.list_by_server(server.id)] == ['shop', 'wiki']

    def test_list_by_unknown_project(self, orchestrator):
        with pytest.raises(NotFound):
            orchestrator.list_by_project(404)


class TestApplicationCrud:

    def test_create_uses_default_minutes(self, orchestrator, admin_ctx, project, server):
        app = orchestrator.create_application(admin_ctx, project.id, server.id, 'api', '/srv/api')

        assert app.state == 'stopped'
        assert app.auto_stop_minutes == 60
        assert AuditService.history('app', app.id)[0].action == 'create_app'

    def test_create_requires_existing_server(self, orchestrator, admin_ctx, project):
        with pytest.raises(NotFound):
            orchestrator.create_application(admin_ctx, project.id, 77, 'api', '/srv/api')

    def test_create_requires_working_directory(self, orchestrator, admin_ctx, project, server):
        with pytest.raises(ValidationError):
            orchestrator.create_application(admin_ctx, project.id, server.id, 'api', '  ')

    def test_update_plain_fields_while_running(self, orchestrator, application, admin_ctx, user_ctx):
        orchestrator.start(application.id, user_ctx)

        orchestrator.update_application(admin_ctx, application.id, name='shop-v2', domain='')

        assert application.name == 'shop-v2'
        assert application.domain is None
        assert application.state == 'running'

    def test_placement_cannot_change_while_running(self, orchestrator, application, admin_ctx, user_ctx):
        orchestrator.start(application.id, user_ctx)

        with pytest.raises(ResourceInUse):
            orchestrator.update_application(admin_ctx, application.id, working_directory='/srv/other')

        assert application.working_directory == '/srv/shop'

    def test_failed_update_leaves_no_partial_changes(self, orchestrator, application, admin_ctx):
        with pytest.raises(NotFound):
            orchestrator.update_application(admin_ctx, application.id, name='shop-v2', project_id=404)

        assert application.name == 'shop'
        assert application not in db.session.dirty

    def test_invalid_minutes_rejects_whole_update(self, orchestrator, application, admin_ctx):
        with pytest.raises(ValidationError):
            orchestrator.update_application(admin_ctx, application.id, domain='', auto_stop_minutes=0)

        assert application.domain == 'https://shop.example.com'
        assert application.auto_stop_minutes == 60
        assert application not in db.session.dirty

    def test_update_minutes_reschedules(self, orchestrator, scheduler, application, admin_ctx, user_ctx):
        orchestrator.start(application.id, user_ctx)

        orchestrator.update_application(admin_ctx, application.id, auto_stop_minutes=5)

        assert scheduler.get(application.id) == T0 + timedelta(minutes=5)

    def test_update_without_fields(self, orchestrator, application, admin_ctx):
        with pytest.raises(ValidationError):
            orchestrator.update_application(admin_ctx, application.id)

    def test_delete_stopped(self, orchestrator, application, admin_ctx):
        app_id = application.id

        orchestrator.delete_application(admin_ctx, app_id)

        assert db.session.get(Application, app_id) is None
        assert AuditService.history('app', app_id)[-1].action == 'delete_app'

    def test_delete_running_requires_force(self, orchestrator, application, admin_ctx, user_ctx):
        orchestrator.start(application.id, user_ctx)

        with pytest.raises(ResourceInUse):
            orchestrator.delete_application(admin_ctx, application.id)

    def test_forced_delete_stops_first(self, orchestrator, scheduler, executor, application, admin_ctx, user_ctx):
        app_id = application.id
        orchestrator.start(app_id, user_ctx)

        orchestrator.delete_application(admin_ctx, app_id, force=True)

        assert executor.count(DOWN_COMMAND) == 1
        assert not scheduler.has(app_id)
        assert db.session.get(Application, app_id) is None

    def test_forced_delete_survives_failed_stop(self, orchestrator, executor, application, admin_ctx, user_ctx):
        app_id = application.id
        orchestrator.start(app_id, user_ctx)
        executor.results[DOWN_COMMAND] = RemoteConnectionError('Connection refused')

        orchestrator.delete_application(admin_ctx, app_id, force=True)

        assert db.session.get(Application, app_id) is None

    def test_delete_server_with_reassign(self, orchestrator, registry, admin_ctx, server, application):
        target = registry.create(admin_ctx, 'web-02', '10.0.0.6', 'deploy', PRIVATE_KEY)

        orchestrator.delete_server(admin_ctx, server.id, reassign_to=target.id)

        assert reload(application).server_id == target.id

    def test_delete_server_with_running_app(self, orchestrator, registry, admin_ctx, user_ctx, server, application):
        target = registry.create(admin_ctx, 'web-02', '10.0.0.6', 'deploy', PRIVATE_KEY)
        orchestrator.start(application.id, user_ctx)

        with pytest.raises(ResourceInUse):
            orchestrator.delete_server(admin_ctx, server.id, reassign_to=target.id)


class TestRecovery:

    def test_interrupted_operations_become_error(self, orchestrator, application):
        application.state = 'stopping'
        db.session.commit()

        assert orchestrator.recover_interrupted() == 1

        assert application.state == 'error'
        assert 'remote result unknown' in application.last_error
        event = AuditEvent.query.order_by(AuditEvent.id.desc()).first()
        assert (event.actor, event.action, event.outcome) == ('system', 'stop_app', 'failed')

    def test_rebuild_derives_deadline_from_started_at(self, orchestrator, scheduler, application):
        application.state = 'running'
        application.started_at = T0 - timedelta(minutes=10)
        application.deadline_at = None
        db.session.commit()

        assert orchestrator.rebuild_schedule() == 1

        assert scheduler.get(application.id) == T0 + timedelta(minutes=50)
        assert application.deadline_at == T0 + timedelta(minutes=50)

    def test_rebuild_fires_past_deadlines(self, orchestrator, scheduler, executor, clock, application):
        application.state = 'running'
        application.started_at = T0 - timedelta(hours=3)
        db.session.commit()

        orchestrator.rebuild_schedule()
        assert scheduler.fire_due(clock()) == 1

        assert reload(application).state == 'stopped'
        assert executor.count(DOWN_COMMAND) == 1

    def test_reconcile_restores_missing_entry(self, orchestrator, scheduler, application, user_ctx):
        orchestrator.start(application.id, user_ctx)
        scheduler.cancel(application.id)

        assert orchestrator.reconcile_schedule() == 1
        assert scheduler.has(application.id)

    def test_reconcile_drops_orphan_entry(self, orchestrator, scheduler, application):
        scheduler.schedule(application.id, T0)

        assert orchestrator.reconcile_schedule() == 1
        assert not scheduler.has(application.id)

    def test_shutdown_parks_in_flight_operation(self, app, orchestrator, executor, application, user_ctx):
        app_id = application.id
        executor.gate = threading.Event()
        results = {}

        def worker():
            with app.app_context():
                try:
                    results['start'] = orchestrator.start(app_id, user_ctx)
                except Exception as e:
                    results['start'] = e

        thread = threading.Thread(target=worker)
        thread.start()
        try:
            assert executor.entered.wait(5)
            db.session.expire_all()
            assert orchestrator.park_in_flight() == 1
        finally:
            executor.gate.set()
            thread.join(5)

        assert isinstance(results['start'], InvalidTransition)
        assert reload(application).state == 'error'
        with pytest.raises(ConcurrencyRejected):
            orchestrator.start(app_id, user_ctx)
