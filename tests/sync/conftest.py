import pytest


@pytest.fixture
def sleeps():
    recorded: list[float] = []
    return recorded


@pytest.fixture
def write_csv(tmp_path):
    def _write(content: str, name: str = "contacts.csv"):
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write
