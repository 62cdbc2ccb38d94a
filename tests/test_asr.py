import hashlib
import plistlib
from unittest import mock

import pytest

from iderestore.asr import ASR_PORT, AsrClient, AsrError, open_asr


class FakeConnection:
    def __init__(self, responses=(), short_send=False):
        self.responses = list(responses)
        self.sent = []
        self.closed = False
        self.short_send = short_send

    def send(self, data):
        self.sent.append(bytes(data))
        return len(data) - 1 if self.short_send else len(data)

    def receive(self, size):
        if not self.responses:
            raise OSError("connection closed")
        return self.responses.pop(0)

    def close(self):
        self.closed = True


class FakeDevice:
    def __init__(self, connection, failures=0):
        self.connection = connection
        self.failures = failures
        self.ports = []

    def connect(self, port):
        self.ports.append(port)
        if self.failures:
            self.failures -= 1
            raise OSError("refused")
        return self.connection


def xml(obj):
    return plistlib.dumps(obj, fmt=plistlib.FMT_XML)


@pytest.fixture
def image(tmp_path):
    content = bytes(range(256)) * 1100
    path = tmp_path / "fs.dmg"
    path.write_bytes(content)
    return path, content


def test_open_asr_reads_checksum_flag():
    conn = FakeConnection([xml({"Command": "Initiate", "Checksum Chunks": True})])
    device = FakeDevice(conn)
    client = open_asr(device)
    assert client.checksum_chunks is True
    assert device.ports == [ASR_PORT]


@mock.patch("iderestore.asr.time.sleep")
def test_open_asr_retries_connection(sleep):
    conn = FakeConnection([xml({"Command": "Initiate"})])
    device = FakeDevice(conn, failures=2)
    client = open_asr(device)
    assert client.checksum_chunks is False
    assert len(device.ports) == 3


@mock.patch("iderestore.asr.time.sleep")
def test_open_asr_gives_up(sleep):
    device = FakeDevice(FakeConnection(), failures=100)
    with pytest.raises(AsrError):
        open_asr(device)
    assert len(device.ports) == 10


def test_open_asr_rejects_unexpected_command():
    conn = FakeConnection([xml({"Command": "Something"})])
    with pytest.raises(AsrError):
        open_asr(FakeDevice(conn))
    assert conn.closed


def test_open_asr_without_device():
    with pytest.raises(AsrError):
        open_asr(None)


def test_send_and_receive_round_trip():
    conn = FakeConnection([xml({"Answer": 7})])
    client = AsrClient(conn)
    client.send({"Question": "x"})
    assert plistlib.loads(conn.sent[0]) == {"Question": "x"}
    assert client.receive() == {"Answer": 7}


def test_receive_unparseable_gives_none():
    client = AsrClient(FakeConnection([b"garbage"]))
    assert client.receive() is None


def test_send_buffer_short_send_raises():
    client = AsrClient(FakeConnection(short_send=True))
    with pytest.raises(AsrError):
        client.send_buffer(b"abcdef")


def test_close_closes_connection():
    conn = FakeConnection()
    with AsrClient(conn) as client:
        pass
    assert conn.closed
    with pytest.raises(AsrError):
        client.send_buffer(b"x")


def test_perform_validation_answers_oob_requests(image):
    path, content = image
    conn = FakeConnection(
        [
            xml({"Command": "OOBData", "OOB Length": 100, "OOB Offset": 1000}),
            xml({"Command": "Payload"}),
        ]
    )
    AsrClient(conn).perform_validation(path)
    info = plistlib.loads(conn.sent[0])
    assert info["FEC Slice Stride"] == 40
    assert info["Packet Payload Size"] == 1450
    assert info["Packets Per FEC"] == 25
    assert info["Stream ID"] == 1
    assert info["Version"] == 1
    assert info["Payload"] == {"Port": 1, "Size": len(content)}
    assert "Checksum Chunk Size" not in info
    assert conn.sent[1] == content[1000:1100]
    assert len(conn.sent) == 2


def test_perform_validation_announces_checksum_chunks(image):
    path, _ = image
    conn = FakeConnection([xml({"Command": "Payload"})])
    AsrClient(conn, checksum_chunks=True).perform_validation(path)
    assert plistlib.loads(conn.sent[0])["Checksum Chunk Size"] == 131072


def test_perform_validation_unknown_command(image):
    path, _ = image
    conn = FakeConnection([xml({"Command": "Bogus"})])
    with pytest.raises(AsrError):
        AsrClient(conn).perform_validation(path)


@mock.patch("iderestore.asr.time.sleep")
def test_perform_validation_gives_up_on_empty_packets(sleep, image):
    path, _ = image
    conn = FakeConnection([b""] * 6)
    with pytest.raises(AsrError):
        AsrClient(conn).perform_validation(path)
    assert sleep.call_count == 5


def test_perform_validation_missing_file(tmp_path):
    with pytest.raises(AsrError):
        AsrClient(FakeConnection()).perform_validation(tmp_path / "missing")


def test_handle_oob_requires_length(image):
    path, _ = image
    client = AsrClient(FakeConnection())
    with open(path, "rb") as handle:
        with pytest.raises(AsrError):
            client.handle_oob_data_request({"OOB Offset": 0}, handle)


def test_handle_oob_past_end_of_file(image):
    path, content = image
    client = AsrClient(FakeConnection())
    with open(path, "rb") as handle:
        with pytest.raises(AsrError):
            client.handle_oob_data_request(
                {"OOB Length": 10, "OOB Offset": len(content)}, handle
            )


def test_send_payload_without_checksums(image):
    path, content = image
    conn = FakeConnection()
    AsrClient(conn).send_payload(path)
    assert b"".join(conn.sent) == content
    assert all(len(chunk) <= 131072 for chunk in conn.sent)


def test_send_payload_with_checksums(image):
    path, content = image
    conn = FakeConnection()
    AsrClient(conn, checksum_chunks=True).send_payload(path)
    assert b"".join(chunk[:-20] for chunk in conn.sent) == content
    for chunk in conn.sent:
        assert chunk[-20:] == hashlib.sha1(chunk[:-20]).digest()


def test_send_payload_reports_progress(tmp_path):
    path = tmp_path / "fs.dmg"
    path.write_bytes(b"\0" * (3 * 131072))
    seen = []
    client = AsrClient(FakeConnection(), progress_callback=seen.append)
    client.send_payload(path)
    assert seen == sorted(seen)
    assert len(seen) == 3
    assert seen[-1] == 1.0


def test_send_payload_failing_connection(image):
    path, _ = image
    with pytest.raises(AsrError):
        AsrClient(FakeConnection(short_send=True)).send_payload(path)