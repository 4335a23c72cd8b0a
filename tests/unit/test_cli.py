import json

from typer.testing import CliRunner

from app.cli import cli_app
from app.services.encryption import encrypt_export

runner = CliRunner()

PASSWORD = "Str0ng!Passw0rd#2024"


def test_decrypt_export_writes_plaintext(tmp_path):
    source = tmp_path / "export.json.enc"
    source.write_text(encrypt_export(b'{"prompts": []}', PASSWORD))
    output = tmp_path / "export.json"

    result = runner.invoke(
        cli_app, ["decrypt-export", str(source), "--output", str(output), "--password", PASSWORD]
    )

    assert result.exit_code == 0, result.output
    assert json.loads(output.read_bytes()) == {"prompts": []}


def test_decrypt_export_wrong_password(tmp_path):
    source = tmp_path / "export.json.enc"
    source.write_text(encrypt_export(b"{}", PASSWORD))

    result = runner.invoke(
        cli_app,
        ["decrypt-export", str(source), "--output", str(tmp_path / "out"), "--password", "Wr0ng!Passw0rd#2024"],
    )

    assert result.exit_code == 1
    assert not (tmp_path / "out").exists()


def test_decrypt_export_rejects_plain_file(tmp_path):
    source = tmp_path / "export.json"
    source.write_text('{"prompts": []}')

    result = runner.invoke(
        cli_app, ["decrypt-export", str(source), "--output", str(tmp_path / "out"), "--password", PASSWORD]
    )

    assert result.exit_code == 1
    assert not (tmp_path / "out").exists()
