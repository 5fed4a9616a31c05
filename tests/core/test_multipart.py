from email.parser import BytesParser

import pytest

from cvtt.core.filesystem import FileStore, FileSystemError
from cvtt.core.multipart import FilePart, MultipartBody


class _TrackedFile:
    def __init__(self, f, store):
        self._f = f
        self._store = store

    def read(self, size=-1):
        return self._f.read(size)

    def close(self):
        self._store.open_files -= 1
        self._f.close()


class CountingStore(FileStore):
    """FileStore remembering how many files were open at once"""

    def __init__(self, base_dir):
        super().__init__(base_dir)
        self.open_files = 0
        self.peak = 0

    def open_read(self, path):
        f = super().open_read(path)
        self.open_files += 1
        self.peak = max(self.peak, self.open_files)
        return _TrackedFile(f, self)


async def _collect(body):
    return b"".join([chunk async for chunk in body])


def _body(store, tmp_path, contents):
    body = MultipartBody(store, boundary="test-boundary")
    body.add_field("collection", '{"records": []}', "application/json")
    for i, data in enumerate(contents):
        name = f"file{i}.bin"
        (tmp_path / name).write_bytes(data)
        body.add_file(FilePart(name=f"binary_{i}", filename=name, path=name, size=len(data)))
    return body


@pytest.mark.asyncio
async def test_body_is_valid_multipart(tmp_path):
    body = _body(FileStore(tmp_path), tmp_path, [b"first", b"second file"])

    data = await _collect(body)

    assert len(data) == body.content_length
    assert body.headers["Content-Length"] == str(len(data))
    message = BytesParser().parsebytes(
        f"Content-Type: {body.headers['Content-Type']}\r\n\r\n".encode() + data
    )
    parts = message.get_payload()
    assert [p.get_param("name", header="content-disposition") for p in parts] == [
        "collection", "binary_0", "binary_1",
    ]
    assert parts[0].get_content_type() == "application/json"
    assert parts[1].get_filename() == "file0.bin"
    assert parts[2].get_payload(decode=True) == b"second file"


@pytest.mark.asyncio
async def test_files_are_opened_one_at_a_time(tmp_path):
    store = CountingStore(tmp_path)
    body = _body(store, tmp_path, [b"x" * 10] * 50)

    await _collect(body)

    assert store.peak == 1
    assert store.open_files == 0


@pytest.mark.asyncio
async def test_no_file_is_opened_before_streaming(tmp_path):
    store = CountingStore(tmp_path)
    body = _body(store, tmp_path, [b"abc"])

    assert body.content_length > 0
    assert store.peak == 0


@pytest.mark.asyncio
async def test_file_changed_after_sizing(tmp_path):
    body = _body(FileStore(tmp_path), tmp_path, [b"abcdef"])
    (tmp_path / "file0.bin").write_bytes(b"abc")

    with pytest.raises(FileSystemError, match="shrank"):
        await _collect(body)


def test_quotes_in_file_names_are_escaped(tmp_path):
    body = MultipartBody(FileStore(tmp_path), boundary="b")
    body.add_file(FilePart(name="binary_0", filename='say "hi".txt', path="x", size=0))

    header = body._part_header("binary_0", "application/octet-stream", 'say "hi".txt')

    assert b'filename="say %22hi%22.txt"' in header
