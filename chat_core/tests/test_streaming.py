from chat_core.providers.streaming import BLOCK, LINE, FrameDecoder


def _decode(parts, separator):
    decoder = FrameDecoder(separator)
    units = []
    for part in parts:
        units.extend(decoder.feed(part))
    units.extend(decoder.flush())
    return units


def test_lines_are_split_on_newline():
    assert _decode([b"a\nb\n", b"c"], LINE) == ["a", "b", "c"]


def test_partial_unit_waits_for_more_bytes():
    decoder = FrameDecoder(LINE)
    assert decoder.feed(b"data: {\"x\"") == []
    assert decoder.feed(b": 1}\n") == ['data: {"x": 1}']


def test_blocks_are_split_on_blank_line():
    data = b"event: a\ndata: 1\n\nevent: b\ndata: 2\n\n"
    assert _decode([data], BLOCK) == ["event: a\ndata: 1", "event: b\ndata: 2"]


def test_every_two_way_split_gives_same_units():
    data = "event: x\r\ndata: 你好\r\n\r\nevent: y\r\ndata: 🤔\r\n\r\ntail".encode("utf-8")
    expected = _decode([data], BLOCK)
    assert expected == ["event: x\ndata: 你好", "event: y\ndata: 🤔", "tail"]
    for i in range(len(data) + 1):
        assert _decode([data[:i], data[i:]], BLOCK) == expected


def test_blank_tail_is_dropped_on_flush():
    assert _decode([b"a\n", b"  "], LINE) == ["a"]
