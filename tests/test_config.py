import tomllib
from pathlib import Path

import pytest

import config as _mod


def _write_config(tmp_path: Path, content: str, monkeypatch: pytest.MonkeyPatch) -> Path:
  path = tmp_path / 'config.toml'
  path.write_text(content)
  monkeypatch.setattr(_mod, '_CONFIG_PATH', path)
  return path


# --- load_config ---


def test_load_config_missing_file_exits(
  tmp_path: Path,
  monkeypatch: pytest.MonkeyPatch,
  capsys: pytest.CaptureFixture[str],
) -> None:
  monkeypatch.chdir(tmp_path)
  with pytest.raises(SystemExit) as exc_info:
    _mod.load_config()
  assert exc_info.value.code == 1
  assert 'config.example.toml' in capsys.readouterr().err


def test_load_config_valid_file_populates_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.chdir(tmp_path)
  (tmp_path / 'config.toml').write_text('[dashboard]\nport = 9090\nallowed_emails = ["a@example.com"]\n')
  _mod.load_config()
  assert _mod._config['dashboard']['port'] == 9090  # noqa: SLF001
  assert _mod.get_allowed_emails() == {'a@example.com'}


def test_load_config_invalid_toml_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.chdir(tmp_path)
  (tmp_path / 'config.toml').write_text('not valid toml ={[}')
  with pytest.raises(tomllib.TOMLDecodeError):
    _mod.load_config()


def test_example_config_parses() -> None:
  example = Path(__file__).parent.parent / 'config.example.toml'
  with open(example, 'rb') as f:
    data = tomllib.load(f)
  assert data['dispatch']['fallback'] in ('always', 'permission', 'never')
  assert 'dashboard' in data


# --- get_optional ---


def test_get_optional_present(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {'sec': {'key': 'val'}})
  assert _mod.get_optional('sec', 'key') == 'val'


def test_get_optional_non_string_is_stringified(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {'messaging': {'timeout': 5}})
  assert _mod.get_optional('messaging', 'timeout') == '5'


def test_get_optional_absent_returns_default(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {})
  assert _mod.get_optional('sec', 'key') == ''
  assert _mod.get_optional('sec', 'key', 'fallback') == 'fallback'


# --- get_optional_int ---


def test_get_optional_int_present(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {'dashboard': {'port': 9090}})
  assert _mod.get_optional_int('dashboard', 'port', 8080) == 9090


def test_get_optional_int_numeric_string(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {'dashboard': {'port': '9091'}})
  assert _mod.get_optional_int('dashboard', 'port', 8080) == 9091


def test_get_optional_int_absent(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {})
  assert _mod.get_optional_int('dashboard', 'port', 8080) == 8080


def test_get_optional_int_invalid_warns(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
  monkeypatch.setattr(_mod, '_config', {'dashboard': {'port': 'eighty'}})
  assert _mod.get_optional_int('dashboard', 'port', 8080) == 8080
  assert "invalid [dashboard].port 'eighty'" in capsys.readouterr().out


# --- get_fallback_policy ---


def test_get_fallback_policy_default(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {})
  assert _mod.get_fallback_policy() == 'always'


@pytest.mark.parametrize('policy', ['always', 'permission', 'never'])
def test_get_fallback_policy_known(monkeypatch: pytest.MonkeyPatch, policy: str) -> None:
  monkeypatch.setattr(_mod, '_config', {'dispatch': {'fallback': policy}})
  assert _mod.get_fallback_policy() == policy


def test_get_fallback_policy_unknown_raises(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {'dispatch': {'fallback': 'sometimes'}})
  with pytest.raises(ValueError, match='sometimes'):
    _mod.get_fallback_policy()


# --- get_allowed_emails / get_owner_email ---


def test_get_allowed_emails_absent(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {})
  assert _mod.get_allowed_emails() == set()


def test_get_allowed_emails_strips_and_drops_blank(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {'dashboard': {'allowed_emails': [' a@example.com ', '', 'b@example.com']}})
  assert _mod.get_allowed_emails() == {'a@example.com', 'b@example.com'}


def test_get_owner_email(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {'dashboard': {'owner_email': ' me@example.com '}})
  assert _mod.get_owner_email() == 'me@example.com'


def test_get_owner_email_absent(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_config', {})
  assert _mod.get_owner_email() == ''


# --- write_section_values ---


def test_write_section_values_updates_existing_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  path = _write_config(tmp_path, '[dashboard]\nsecret = "old"\n', monkeypatch)
  _mod.write_section_values('dashboard', {'secret': 'new'})
  text = path.read_text()
  assert 'secret = "new"' in text
  assert 'old' not in text


def test_write_section_values_replaces_commented_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  path = _write_config(tmp_path, '[dashboard]\n# secret = "placeholder"\nport = 8080\n', monkeypatch)
  _mod.write_section_values('dashboard', {'secret': 'abc123'})
  text = path.read_text()
  assert 'secret = "abc123"' in text
  assert '# secret' not in text
  assert 'port = 8080' in text


def test_write_section_values_appends_new_key(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  path = _write_config(tmp_path, '[dashboard]\nport = 8080\n\n[dispatch]\nfallback = "never"\n', monkeypatch)
  _mod.write_section_values('dashboard', {'secret': 'added'})
  text = path.read_text()
  assert text.index('secret = "added"') < text.index('[dispatch]')
  assert 'fallback = "never"' in text


def test_write_section_values_int_unquoted(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  path = _write_config(tmp_path, '[dashboard]\nport = 8080\n', monkeypatch)
  _mod.write_section_values('dashboard', {'port': 9000})
  assert 'port = 9000\n' in path.read_text()


def test_write_section_values_last_section(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  path = _write_config(tmp_path, '[other]\nfoo = "bar"\n\n[dashboard]\nport = 8080\n', monkeypatch)
  _mod.write_section_values('dashboard', {'secret': 's'})
  text = path.read_text()
  assert text.endswith('secret = "s"\n')
  assert 'foo = "bar"' in text


def test_write_section_values_section_not_found_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  _write_config(tmp_path, '[other]\nfoo = "bar"\n', monkeypatch)
  with pytest.raises(ValueError, match=r'\[dashboard\]'):
    _mod.write_section_values('dashboard', {'secret': 'val'})


def test_write_section_values_missing_file_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setattr(_mod, '_CONFIG_PATH', tmp_path / 'config.toml')
  with pytest.raises(FileNotFoundError):
    _mod.write_section_values('dashboard', {'secret': 'val'})


def test_write_section_values_updates_memory_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  _write_config(tmp_path, '[dashboard]\nsecret = "old"\n', monkeypatch)
  cache: dict = {}
  monkeypatch.setattr(_mod, '_config', cache)
  _mod.write_section_values('dashboard', {'secret': 'fresh'})
  assert cache['dashboard']['secret'] == 'fresh'
  assert _mod.get_optional('dashboard', 'secret') == 'fresh'


def test_write_section_values_result_still_parses(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
  path = _write_config(tmp_path, '# comment\n[dashboard]\nport = 8080\n\n[storage]\npath = "c.json"\n', monkeypatch)
  _mod.write_section_values('dashboard', {'secret': 'xyz', 'port': 9000})
  data = tomllib.loads(path.read_text())
  assert data['dashboard'] == {'port': 9000, 'secret': 'xyz'}
  assert data['storage'] == {'path': 'c.json'}
