import pytest

from cvtt.core.org import OrgConnection


@pytest.fixture
def connection():
    return OrgConnection(
        instance_url="https://example.my.salesforce.com",
        access_token="00Dxx!token",
        api_version="62.0",
    )


@pytest.fixture
def write_csv(tmp_path):
    def _write(name, content):
        path = tmp_path / name
        path.write_text(content, encoding="utf-8")
        return path

    return _write
