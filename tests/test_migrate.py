from sqlalchemy import create_engine, inspect

from flyerdeals.db.migrate import SCHEMA_PATH, main, run_migrations, split_statements


def test_schema_statements_are_complete():
    statements = split_statements(SCHEMA_PATH.read_text())
    assert statements
    assert all(stmt.endswith(";") for stmt in statements)
    assert any("CREATE TABLE IF NOT EXISTS flyers" in stmt for stmt in statements)
    assert any("CREATE TABLE IF NOT EXISTS deals" in stmt for stmt in statements)


def test_split_statements_drops_comments():
    sql = "-- header\n\nCREATE TABLE a (id int); -- trailing\n-- between\nCREATE INDEX b\n  ON a (id);\n"
    assert split_statements(sql) == ["CREATE TABLE a (id int);", "CREATE INDEX b\n  ON a (id);"]


def test_run_migrations_applies_script(tmp_path):
    schema = tmp_path / "schema.sql"
    schema.write_text(
        "-- widgets\nCREATE TABLE IF NOT EXISTS widgets (\n    id INTEGER PRIMARY KEY,\n    name TEXT\n);\n"
        "CREATE INDEX IF NOT EXISTS idx_widget_name ON widgets (name);\n"
    )
    engine = create_engine("sqlite://")
    assert run_migrations(engine, schema) == 2
    assert run_migrations(engine, schema) == 2
    assert inspect(engine).has_table("widgets")


def test_dry_run_prints_statements(capsys):
    assert main(["--dry-run"]) == 0
    out = capsys.readouterr().out
    assert "CREATE TABLE IF NOT EXISTS flyers" in out
