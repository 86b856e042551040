from pathlib import Path

import yaml
from click.testing import CliRunner

from botharbor import __version__
from botharbor.cli import cli


def test_version():
    result = CliRunner().invoke(cli, ['--version'])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_candidates_lists_start_commands(tmp_path):
    (tmp_path / 'package.json').write_text('{"scripts": {"start": "node bot.js"}}')
    (tmp_path / 'bot.js').write_text('')

    result = CliRunner().invoke(cli, ['candidates', str(tmp_path)])

    assert result.exit_code == 0
    assert 'npm start' in result.output
    assert 'node bot.js' in result.output


def test_free_port_prints_a_port():
    result = CliRunner().invoke(cli, ['free-port', '--start', '40000', '--end', '40100'])
    assert result.exit_code == 0
    assert 40000 <= int(result.output.strip()) <= 40100


def test_init_config_writes_defaults_once(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ['init-config', '-o', 'botharbor.yaml'])
        assert result.exit_code == 0
        data = yaml.safe_load(Path('botharbor.yaml').read_text())
        assert data['supervisor']['port_start'] == 10000
        assert data['supervisor']['npm_bin'] == 'npm'

        again = runner.invoke(cli, ['init-config', '-o', 'botharbor.yaml'])
        assert again.exit_code == 1
        assert 'already exists' in again.output


def test_status_reports_unreachable_api():
    result = CliRunner().invoke(cli, ['status', 'srv', 'dep', '--url', 'http://127.0.0.1:9'])
    assert result.exit_code == 1
    assert 'Error' in result.output
