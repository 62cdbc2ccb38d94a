import struct

import pytest

from iderestore.ftab import ENTRY_SIZE, HEADER_SIZE, FtabError, parse_ftab


def _header(count=0, tag=b"rkos", magic=b"ftab"):
    return struct.pack("<II24x", 1, 0xFFFFFFFF) + tag + magic + struct.pack("<II", count, 0)


def test_parse_empty_container():
    raw = _header()
    ftab = parse_ftab(raw)
    assert ftab.tag == int.from_bytes(b"rkos", "big")
    assert ftab.entries == []
    assert ftab.to_bytes() == raw


def test_wire_layout():
    ftab = parse_ftab(_header())
    ftab.add_entry(b"rrko", b"payload")
    out = ftab.to_bytes()
    assert out[:8] == b"\x01\x00\x00\x00\xff\xff\xff\xff"
    assert out[32:36] == b"rkos"
    assert out[36:40] == b"ftab"
    assert out[HEADER_SIZE : HEADER_SIZE + 4] == b"rrko"
    assert out.endswith(b"payload")


def test_add_entry_recomputes_offsets():
    ftab = parse_ftab(_header())
    ftab.add_entry("aaaa", b"first")
    ftab.add_entry("bbbb", b"second!")
    first, second = ftab.entries
    assert first.offset == HEADER_SIZE + 2 * ENTRY_SIZE
    assert second.offset == first.offset + len(b"first")
    assert len(ftab.to_bytes()) == second.offset + len(b"second!")


def test_round_trip():
    ftab = parse_ftab(_header())
    ftab.add_entry(b"aaaa", b"first")
    ftab.add_entry(b"bbbb", b"second")
    raw = ftab.to_bytes()
    again = parse_ftab(raw)
    assert [e.tag for e in again.entries] == [e.tag for e in ftab.entries]
    assert [e.data for e in again.entries] == [b"first", b"second"]
    assert again.to_bytes() == raw


def test_get_entry_by_any_tag_form():
    ftab = parse_ftab(_header())
    ftab.add_entry(b"rrko", b"data")
    assert ftab.get_entry("rrko") == b"data"
    assert ftab.get_entry(b"rrko") == b"data"
    assert ftab.get_entry(int.from_bytes(b"rrko", "big")) == b"data"


def test_get_entry_returns_last_match():
    ftab = parse_ftab(_header())
    ftab.add_entry(b"dupe", b"old")
    ftab.add_entry(b"dupe", b"new")
    assert ftab.get_entry(b"dupe") == b"new"


def test_get_entry_missing():
    ftab = parse_ftab(_header())
    with pytest.raises(FtabError):
        ftab.get_entry(b"none")
    with pytest.raises(FtabError):
        ftab.get_entry(0)


def test_add_entry_rejects_empty():
    ftab = parse_ftab(_header())
    with pytest.raises(FtabError):
        ftab.add_entry(b"aaaa", b"")
    with pytest.raises(FtabError):
        ftab.add_entry(0, b"data")
    assert ftab.entries == []


def test_parse_errors():
    with pytest.raises(FtabError):
        parse_ftab(b"")
    with pytest.raises(FtabError):
        parse_ftab(_header()[:20])
    with pytest.raises(FtabError, match="magic"):
        parse_ftab(_header(magic=b"nope"))
    with pytest.raises(FtabError):
        parse_ftab(_header(count=1))


def test_entry_out_of_bounds():
    raw = _header(count=1) + b"aaaa" + struct.pack("<II4x", HEADER_SIZE + ENTRY_SIZE, 100)
    with pytest.raises(FtabError):
        parse_ftab(raw)