import numpy as np
import pytest

from errors import InvalidOperation, ShapeMismatch
from shape import Shape
from tensor import Tensor


def image(rows, channels=1):
    # (1, 1, W, H, channels) from a W x H nested list
    arr = np.asarray(rows, dtype=np.float32)
    return Tensor.from_array(np.repeat(arr[..., None], channels, axis=-1)[None, None])


def test_conv2d_identity_with_ones():
    x = image(np.eye(3))
    k = Tensor.ones((1, 1, 2, 2, 1))
    b = Tensor.zeros((1, 1, 1, 1, 1))
    out = x.conv2d(k, b, 1)
    assert out.shape == Shape(1, 1, 2, 2, 1)
    np.testing.assert_allclose(out.data[0, 0, :, :, 0], [[2, 1], [1, 2]])


def test_conv2d_matches_direct_sum():
    rng = np.random.default_rng(0)
    x = Tensor.random((2, 3, 5, 4, 2), rng)
    k = Tensor.random((4, 3, 3, 2, 2), rng)
    b = Tensor.random((1, 1, 1, 1, 4), rng)
    out = x.conv2d(k, b, 2)
    assert out.shape == Shape(2, 3, 2, 2, 4)

    expected = np.zeros((2, 3, 2, 2, 4))
    for n in range(2):
        for f in range(3):
            for u in range(2):
                for v in range(2):
                    patch = x.data[n, f, 2 * u:2 * u + 3, 2 * v:2 * v + 2, :]
                    for o in range(4):
                        expected[n, f, u, v, o] = np.sum(patch * k.data[o, f]) + b.data.ravel()[o]
    np.testing.assert_allclose(out.data, expected, rtol=1e-5, atol=1e-5)


def test_conv3d_matches_direct_sum():
    rng = np.random.default_rng(1)
    x = Tensor.random((1, 4, 4, 4, 2), rng)
    k = Tensor.random((3, 2, 2, 2, 2), rng)
    out = x.conv3d(k)
    assert out.shape == Shape(1, 3, 3, 3, 3)
    patch = x.data[0, 1:3, 2:4, 0:2, :]
    assert out.at(0, 1, 2, 0, 2) == pytest.approx(float(np.sum(patch * k.data[2])), rel=1e-5)


def test_conv_argument_checks():
    x = Tensor.ones((1, 1, 3, 3, 1))
    with pytest.raises(InvalidOperation):
        x.conv2d(Tensor.ones((1, 1, 2, 2, 1)), stride=0)
    with pytest.raises(ShapeMismatch):
        x.conv2d(Tensor.ones((1, 1, 2, 2, 2)))
    with pytest.raises(ShapeMismatch):
        x.conv2d(Tensor.ones((1, 1, 4, 4, 1)))
    with pytest.raises(ShapeMismatch):
        x.conv2d(Tensor.ones((2, 1, 2, 2, 1)), Tensor.ones((1, 1, 1, 1, 3)))


def test_max_pooling():
    x = image([[1, 3], [2, 4]])
    out = x.max_pooling(2)
    assert out.shape == Shape(1, 1, 1, 1, 1)
    assert out.get(0) == 4


def test_pooling_shapes_and_values():
    x = Tensor.from_array(np.arange(32), (1, 2, 4, 2, 2))
    for pooled in (x.max_pooling(2), x.min_pooling(2), x.avg_pooling(2)):
        assert pooled.shape == Shape(1, 2, 2, 1, 2)
    # window (w 0..1, h 0..1) of frame 0, channel 0 holds 0, 2, 4, 6
    assert x.max_pooling(2).at(0, 0, 0, 0, 0) == 6
    assert x.min_pooling(2).at(0, 0, 0, 0, 0) == 0
    assert x.avg_pooling(2).at(0, 0, 0, 0, 0) == 3
    with pytest.raises(ShapeMismatch):
        x.max_pooling(3)
    with pytest.raises(InvalidOperation):
        x.max_pooling(0)


def test_upsampling_marks_first_extreme():
    original = image([[5, 5], [1, 1]])
    grad = Tensor.full((1, 1, 1, 1, 1), 2.0)
    np.testing.assert_array_equal(grad.max_upsampling(original, 2).data[0, 0, :, :, 0], [[2, 0], [0, 0]])
    np.testing.assert_array_equal(grad.min_upsampling(original, 2).data[0, 0, :, :, 0], [[0, 0], [2, 0]])
    np.testing.assert_allclose(grad.avg_upsampling(2).data[0, 0, :, :, 0], [[0.5, 0.5], [0.5, 0.5]])
    with pytest.raises(ShapeMismatch):
        grad.max_upsampling(image(np.ones((4, 4))), 2)


def test_padding_and_clipping():
    x = Tensor.random((2, 1, 3, 2, 2), np.random.default_rng(3))
    padded = x.padding(2)
    assert padded.shape == Shape(2, 1, 7, 6, 2)
    assert padded.at(0, 0, 0, 0, 0) == 0
    assert padded.clipping(2) == x
    with pytest.raises(ShapeMismatch):
        x.clipping(2)


def test_rotate180():
    x = image([[1, 2], [3, 4]])
    np.testing.assert_array_equal(x.rotate180().data[0, 0, :, :, 0], [[4, 3], [2, 1]])
    t = Tensor.random((2, 2, 3, 4, 2), np.random.default_rng(4))
    assert t.rotate180().rotate180() == t


def test_kronecker():
    t = Tensor.random((1, 2, 2, 3, 2), np.random.default_rng(5))
    assert t.kronecker(Tensor.ones((1, 1, 1, 1, 1))) == t
    out = image([[1, 2]]).kronecker(Tensor.ones((1, 1, 2, 2, 1)))
    assert out.shape == Shape(1, 1, 2, 4, 1)
    np.testing.assert_array_equal(out.data[0, 0, :, :, 0], [[1, 1, 2, 2], [1, 1, 2, 2]])
