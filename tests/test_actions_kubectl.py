"""Tests for actions/kubectl.py - namespace ensure and manifest apply."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import yaml

from actions.kubectl import (
    CONFIGURED,
    CREATED,
    ERROR,
    UNCHANGED,
    WOULD_CHANGE,
    ApplyOutcome,
    EnsureNamespaceAction,
    KubectlApplyAction,
    parse_apply_output,
)
from conftest import DEPLOYMENT_API, JOB_MIGRATE, SERVICE_API
from errors import ApplyError
from manifest import parse_manifests


@pytest.fixture
def documents():
    return parse_manifests('---\n'.join([DEPLOYMENT_API, SERVICE_API, JOB_MIGRATE]))


class TestApplyOutcome:
    """Test ApplyOutcome helpers."""

    def test_str_and_dict(self):
        outcome = ApplyOutcome('Deployment', 'staging', 'api', CREATED)
        assert str(outcome) == 'Deployment/staging api: created'
        assert outcome.to_dict() == {
            'kind': 'Deployment', 'namespace': 'staging', 'name': 'api', 'action': 'created',
        }
        assert not outcome.is_error

    def test_error_includes_message(self):
        outcome = ApplyOutcome('Job', 'staging', 'migrate', ERROR, 'field is immutable')
        assert outcome.is_error
        assert outcome.to_dict()['message'] == 'field is immutable'

    def test_aggregate_error(self):
        outcome = ApplyOutcome.aggregate_error('staging', 'connection refused')
        assert outcome.kind == '*'
        assert outcome.name == '*'
        assert outcome.is_error


class TestParseApplyOutput:
    """Test mapping kubectl apply output to per-object outcomes."""

    def test_all_reported(self, documents):
        stdout = (
            "deployment.apps/api created\n"
            "service/api unchanged\n"
            "job.batch/migrate configured\n"
        )
        outcomes = parse_apply_output(documents, stdout, '', 0, 'staging')
        assert [(o.kind, o.name, o.action) for o in outcomes] == [
            ('Deployment', 'api', CREATED),
            ('Service', 'api', UNCHANGED),
            ('Job', 'migrate', CONFIGURED),
        ]
        assert all(o.namespace == 'staging' for o in outcomes)

    def test_reapply_without_drift(self, documents):
        """Should report a second identical apply without errors."""
        stdout = "deployment.apps/api unchanged\nservice/api unchanged\njob.batch/migrate configured\n"
        outcomes = parse_apply_output(documents, stdout, '', 0, 'staging')
        assert not any(o.is_error for o in outcomes)
        assert {o.action for o in outcomes} <= {UNCHANGED, CONFIGURED}

    def test_outcomes_follow_submission_order(self, documents):
        stdout = "job.batch/migrate created\nservice/api created\ndeployment.apps/api created\n"
        outcomes = parse_apply_output(documents, stdout, '', 0, 'staging')
        assert [o.kind for o in outcomes] == ['Deployment', 'Service', 'Job']

    def test_server_side_applied_is_configured(self, documents):
        stdout = "deployment.apps/api serverside-applied\n"
        outcomes = parse_apply_output(documents[:1], stdout, '', 0, 'staging')
        assert outcomes[0].action == CONFIGURED

    def test_dry_run_marks_changes(self, documents):
        """Should report would-change for anything but unchanged in dry run."""
        stdout = (
            "deployment.apps/api created (server dry run)\n"
            "service/api unchanged (server dry run)\n"
            "job.batch/migrate configured (server dry run)\n"
        )
        outcomes = parse_apply_output(documents, stdout, '', 0, 'staging', dry_run=True)
        assert [o.action for o in outcomes] == [WOULD_CHANGE, UNCHANGED, WOULD_CHANGE]

    def test_partial_failure(self, documents):
        """Should mark unreported objects as errors with kubectl's message."""
        stdout = "deployment.apps/api configured\nservice/api unchanged\n"
        stderr = (
            'The Job "migrate" is invalid: spec.template: Invalid value: field is immutable\n'
        )
        outcomes = parse_apply_output(documents, stdout, stderr, 1, 'staging')
        assert [o.action for o in outcomes] == [CONFIGURED, UNCHANGED, ERROR]
        assert 'field is immutable' in outcomes[2].message

    def test_total_failure_raises(self, documents):
        with pytest.raises(ApplyError, match='connection refused'):
            parse_apply_output(documents, '', 'The connection to the server was refused: connection refused',
                               1, 'staging')

    def test_total_failure_without_stderr(self, documents):
        with pytest.raises(ApplyError, match='exit code 1'):
            parse_apply_output(documents, '', '', 1, 'staging')

    def test_unreported_on_success(self, documents):
        outcomes = parse_apply_output(documents[:1], '', '', 0, 'staging')
        assert outcomes[0].action == CONFIGURED
        assert outcomes[0].message == 'not reported by kubectl'

    def test_same_name_different_namespaces(self):
        docs = parse_manifests(
            "apiVersion: v1\nkind: ConfigMap\nmetadata: {name: cfg, namespace: a}\n---\n"
            "apiVersion: v1\nkind: ConfigMap\nmetadata: {name: cfg, namespace: b}\n"
        )
        stdout = "configmap/cfg created\nconfigmap/cfg unchanged\n"
        outcomes = parse_apply_output(docs, stdout, '', 0, 'staging')
        assert [(o.namespace, o.action) for o in outcomes] == [('a', CREATED), ('b', UNCHANGED)]

    def test_ignores_warning_lines(self, documents):
        stdout = "Warning: resource is deprecated\ndeployment.apps/api created\n"
        outcomes = parse_apply_output(documents[:1], stdout, '', 0, 'staging')
        assert outcomes[0].action == CREATED


class TestKubectlApplyAction:
    """Test KubectlApplyAction command building and execution."""

    def test_default_command(self, make_config):
        cmd = KubectlApplyAction().build_command(make_config())
        assert cmd == ['kubectl', 'apply', '-f', '-', '--namespace=staging', '--validate=true']

    def test_command_flags(self, make_config):
        config = make_config(server_side=True, field_manager='ci', dry_run=True,
                             validate=False, context='prod-ctx')
        cmd = KubectlApplyAction().build_command(config)
        assert cmd[:2] == ['kubectl', '--context=prod-ctx']
        assert '--validate=false' in cmd
        assert '--server-side' in cmd
        assert '--field-manager=ci' in cmd
        assert '--dry-run=server' in cmd

    def test_single_call_with_manifests_on_stdin(self, documents, make_config):
        """Should submit every document in exactly one kubectl call."""
        stdout = "deployment.apps/api created\nservice/api created\njob.batch/migrate created\n"
        config = make_config(command_timeout=90)
        with patch('actions.kubectl.run_command', return_value=(0, stdout, '')) as mock_run:
            outcomes = KubectlApplyAction().run(config, documents)

        assert mock_run.call_count == 1
        kwargs = mock_run.call_args[1]
        assert kwargs['timeout'] == 90
        submitted = list(yaml.safe_load_all(kwargs['input_text']))
        assert [d['kind'] for d in submitted] == ['Deployment', 'Service', 'Job']
        assert all(o.action == CREATED for o in outcomes)

    def test_short_budget_bounds_apply(self, documents, make_config):
        config = make_config(wait_timeout=10)
        with patch('actions.kubectl.run_command', return_value=(0, '', '')) as mock_run:
            KubectlApplyAction().run(config, documents)
        assert mock_run.call_args[1]['timeout'] == 10

    def test_failure_is_not_retried(self, documents, make_config):
        with patch('actions.kubectl.run_command', return_value=(1, '', 'Unauthorized')) as mock_run:
            with pytest.raises(ApplyError, match='Unauthorized'):
                KubectlApplyAction().run(make_config(), documents)
        assert mock_run.call_count == 1

    def test_empty_documents_skip_kubectl(self, make_config):
        with patch('actions.kubectl.run_command') as mock_run:
            assert KubectlApplyAction().run(make_config(), []) == []
        mock_run.assert_not_called()


class TestEnsureNamespaceAction:
    """Test EnsureNamespaceAction."""

    def test_existing_namespace(self, make_config):
        with patch('actions.kubectl.run_command', return_value=(0, 'namespace/staging', '')) as mock_run:
            result = EnsureNamespaceAction().run(make_config())

        assert result.success
        assert mock_run.call_count == 1
        assert mock_run.call_args[0][0] == ['kubectl', 'get', 'namespace', 'staging', '-o', 'name']

    def test_creates_missing_namespace(self, make_config):
        responses = [
            (1, '', 'Error from server (NotFound): namespaces "staging" not found'),
            (0, 'namespace/staging created', ''),
        ]
        with patch('actions.kubectl.run_command', side_effect=responses) as mock_run:
            result = EnsureNamespaceAction().run(make_config())

        assert result.success
        assert result.context_updates == {'namespace_created': True, 'namespace_missing': False}
        assert mock_run.call_args_list[1][0][0] == ['kubectl', 'create', 'namespace', 'staging']

    def test_dry_run_create_is_server_dry_run(self, make_config):
        responses = [
            (1, '', 'Error from server (NotFound): namespaces "staging" not found'),
            (0, 'namespace/staging created (server dry run)', ''),
        ]
        with patch('actions.kubectl.run_command', side_effect=responses) as mock_run:
            result = EnsureNamespaceAction().run(make_config(dry_run=True))

        assert result.success
        assert '--dry-run=server' in mock_run.call_args_list[1][0][0]
        assert result.context_updates == {'namespace_created': False, 'namespace_missing': True}

    def test_create_race_tolerated(self, make_config):
        responses = [
            (1, '', 'Error from server (NotFound): namespaces "staging" not found'),
            (1, '', 'Error from server (AlreadyExists): namespaces "staging" already exists'),
        ]
        with patch('actions.kubectl.run_command', side_effect=responses):
            assert EnsureNamespaceAction().run(make_config()).success

    def test_create_forbidden_fails(self, make_config):
        responses = [
            (1, '', 'Error from server (NotFound): namespaces "staging" not found'),
            (1, '', 'Error from server (Forbidden): namespaces is forbidden'),
        ]
        with patch('actions.kubectl.run_command', side_effect=responses):
            result = EnsureNamespaceAction().run(make_config())
        assert not result.success
        assert 'Forbidden' in result.message

    def test_unreadable_cluster_fails_without_create(self, make_config):
        with patch('actions.kubectl.run_command',
                   return_value=(1, '', 'Unable to connect to the server')) as mock_run:
            result = EnsureNamespaceAction().run(make_config())
        assert not result.success
        assert mock_run.call_count == 1
