from nbnet.nbhttp.body import BodyReader


def test_read_in_pieces():
    reader = BodyReader(b"hello world")
    assert reader.read(5) == b"hello"
    assert reader.read(100) == b" world"
    assert reader.read(1) == b""


def test_read_all_by_default():
    reader = BodyReader(b"abc")
    assert reader.read() == b"abc"
    assert reader.read() == b""


def test_empty_reader():
    reader = BodyReader()
    assert reader.raw_body() is None
    assert reader.read(10) == b""


def test_append_extends_body():
    reader = BodyReader()
    reader.append(b"foo")
    reader.append(b"")
    reader.append(b"bar")
    assert bytes(reader.raw_body()) == b"foobar"
    assert reader.read() == b"foobar"


def test_take_over_empties_reader():
    reader = BodyReader(b"data")
    reader.read(2)
    buf = reader.take_over()
    assert bytes(buf) == b"data"
    assert reader.raw_body() is None
    assert reader.read() == b""


def test_close_releases_buffer():
    reader = BodyReader(b"data")
    reader.close()
    assert reader.raw_body() is None
    assert reader.read() == b""


def test_reset_forgets_buffer():
    reader = BodyReader(b"data")
    reader.reset()
    assert reader.raw_body() is None
    reader.append(b"new")
    assert reader.read() == b"new"


def test_context_manager_closes():
    with BodyReader(b"xyz") as reader:
        assert reader.read(1) == b"x"
    assert reader.raw_body() is None


def test_source_data_is_copied():
    data = bytearray(b"copy")
    reader = BodyReader(data)
    data[0] = ord("X")
    assert reader.read() == b"copy"