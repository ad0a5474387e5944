import io

import pytest

from errors import InvalidIndex, ShapeMismatch
from shape import UNKNOWN, Shape


def test_construction_forms_are_equivalent():
    assert Shape(1, 1, 28, 28, 3) == Shape([1, 1, 28, 28, 3])
    assert Shape((2, 3, 4, 5, 6)).channel == 6
    assert repr(Shape(1, 2, 3, 4, 5)) == "Shape(1, 2, 3, 4, 5)"


def test_rank_and_negative_extents_are_rejected():
    with pytest.raises(ShapeMismatch):
        Shape(1, 2, 3)
    with pytest.raises(ShapeMismatch):
        Shape(1, -2, 3, 4, 5)


def test_unknown_sample_count():
    s = Shape(None, 1, 28, 28, 1)
    assert s.sample == UNKNOWN
    assert not s.is_resolved
    with pytest.raises(ShapeMismatch):
        s.size
    assert s.resolve(4) == Shape(4, 1, 28, 28, 1)
    assert s.accepts(Shape(7, 1, 28, 28, 1))
    assert not s.accepts(Shape(7, 1, 28, 27, 1))


def test_sub2ind_ind2sub_roundtrip():
    s = Shape(2, 3, 2, 2, 3)
    for i in range(s.size):
        assert s.sub2ind(*s.ind2sub(i)) == i
    assert s.sub2ind(0, 0, 0, 0, 1) == 1
    assert s.sub2ind(1, 0, 0, 0, 0) == 36


def test_out_of_range_subscripts():
    s = Shape(1, 1, 2, 2, 1)
    with pytest.raises(InvalidIndex):
        s.sub2ind(0, 0, 2, 0, 0)
    with pytest.raises(IndexError):
        s.ind2sub(4)
    with pytest.raises(InvalidIndex):
        s.axis(5)


def test_flatten_merges_trailing_axes():
    assert Shape(2, 3, 4, 5, 6).flatten() == Shape(2, 3, 120, 1, 1)
    assert Shape(2, 3, 4, 5, 6).flatten(1) == Shape(2, 360, 1, 1, 1)


def test_set_returns_new_shape():
    s = Shape(1, 1, 2, 2, 1)
    assert s.set(4, 10) == Shape(1, 1, 2, 2, 10)
    assert s == Shape(1, 1, 2, 2, 1)


@pytest.mark.parametrize("a, b, expected", [
    ((1, 1, 2, 2, 3), (1, 1, 2, 2, 3), (1, 1, 2, 2, 3)),
    ((4, 1, 1, 1, 3), (1, 1, 1, 1, 3), (4, 1, 1, 1, 3)),
    ((1, 1, 1, 1, 3), (4, 1, 1, 1, 3), (4, 1, 1, 1, 3)),
    ((2, 3, 4, 5, 1), (2, 3, 4, 5, 6), (2, 3, 4, 5, 6)),
    ((1, 1, 2, 2, 1), (1, 1, 1, 1, 1), (1, 1, 2, 2, 1)),
])
def test_broadcast(a, b, expected):
    assert Shape(a).broadcast(Shape(b)) == Shape(expected)


@pytest.mark.parametrize("a, b", [
    ((1, 1, 2, 2, 3), (1, 1, 2, 2, 4)),
    ((2, 1, 1, 1, 3), (1, 1, 2, 1, 3)),
    ((1, 2, 2, 2, 3), (1, 1, 1, 2, 3)),
])
def test_broadcast_mismatch(a, b):
    with pytest.raises(ShapeMismatch):
        Shape(a).broadcast(Shape(b))


def test_stream_roundtrip():
    stream = io.StringIO()
    Shape(1, 2, 3, 4, 5).dump(stream)
    assert stream.getvalue() == "1 2 3 4 5\n"
    stream.seek(0)
    assert Shape.load(stream) == Shape(1, 2, 3, 4, 5)


def test_load_reads_extents_across_lines():
    stream = io.StringIO("1 2\n3\n 4 5 6 7 8 9 10")
    assert Shape.load(stream) == Shape(1, 2, 3, 4, 5)
    assert Shape.load(stream) == Shape(6, 7, 8, 9, 10)
    with pytest.raises(ShapeMismatch):
        Shape.load(io.StringIO("1 1 1\n"))
