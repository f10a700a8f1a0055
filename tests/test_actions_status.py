"""Tests for actions/status.py - workload status reads."""

import json
import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest

from actions.status import KubectlStatusReader, StatusReader
from conftest import FakeReader, deployment_status
from errors import StatusReadError, WorkloadNotFoundError
from workloads import WorkloadRef

REF = WorkloadRef('Deployment', 'staging', 'api')


class TestKubectlStatusReader:
    """Test reads via kubectl get -o json."""

    def test_reads_object(self, make_config):
        obj = deployment_status()
        reader = KubectlStatusReader(make_config(context='dev'))
        with patch('actions.status.run_command', return_value=(0, json.dumps(obj), '')) as mock_run:
            assert reader.read(REF, 12.5) == obj

        cmd = mock_run.call_args[0][0]
        assert cmd == [
            'kubectl', '--context=dev', 'get', 'deployment', 'api',
            '--namespace=staging', '-o', 'json', '--request-timeout=13s',
        ]
        assert mock_run.call_args[1]['timeout'] == 12.5

    def test_not_found(self, make_config):
        err = 'Error from server (NotFound): deployments.apps "api" not found'
        with patch('actions.status.run_command', return_value=(1, '', err)):
            with pytest.raises(WorkloadNotFoundError):
                KubectlStatusReader(make_config()).read(REF, 5)

    def test_other_failure(self, make_config):
        with patch('actions.status.run_command', return_value=(1, '', 'Unable to connect')):
            with pytest.raises(StatusReadError, match='Unable to connect') as exc_info:
                KubectlStatusReader(make_config()).read(REF, 5)
        assert not isinstance(exc_info.value, WorkloadNotFoundError)

    def test_timeout_is_read_error(self, make_config):
        with patch('actions.status.run_command', return_value=(-1, '', 'Command timed out after 5s')):
            with pytest.raises(StatusReadError, match='timed out'):
                KubectlStatusReader(make_config()).read(REF, 5)

    def test_invalid_json(self, make_config):
        with patch('actions.status.run_command', return_value=(0, 'not json', '')):
            with pytest.raises(StatusReadError, match='Invalid JSON'):
                KubectlStatusReader(make_config()).read(REF, 5)

    def test_no_time_left(self, make_config):
        with patch('actions.status.run_command') as mock_run:
            with pytest.raises(StatusReadError, match='No time left'):
                KubectlStatusReader(make_config()).read(REF, 0)
        mock_run.assert_not_called()

    def test_satisfies_protocol(self, make_config):
        assert isinstance(KubectlStatusReader(make_config()), StatusReader)
        assert isinstance(FakeReader({}), StatusReader)
