import os

import pytest

# Env vars the live messaging tests read, with what each one is for.
_REQUIRED_ENV = {
  'MESSAGING_TEST_TOKEN': 'credential for a throwaway test account',
  'MESSAGING_TEST_TARGET': 'channel id the test account may post in',
}

_skip_count = 0


@pytest.fixture(scope='session', autouse=True)
def _report_env() -> None:
  """Print which live-API env vars are present before any test runs."""
  print('\nMessaging integration env:')
  for name, purpose in _REQUIRED_ENV.items():
    state = 'ok' if os.environ.get(name, '').strip() else 'missing'
    print(f'  {name:<24}{state:<9}{purpose}')
  print()


def pytest_runtest_logreport(report: pytest.TestReport) -> None:
  global _skip_count
  if report.skipped and report.when != 'teardown':
    _skip_count += 1


def pytest_sessionfinish(session: pytest.Session, exitstatus: int | pytest.ExitCode) -> None:
  # A run where every live test skipped for lack of credentials is not a pass.
  if _skip_count and exitstatus == pytest.ExitCode.OK:
    print(f'\nWARNING: {_skip_count} integration test(s) skipped; check the env listed above.')
    session.exitstatus = pytest.ExitCode.NO_TESTS_COLLECTED
