"""
    Gradients of the graph checked against torch autograd and jax.grad.

    An upstream gradient g is injected with a frozen multiplier, so the
    terminal is sum(op(x) * g) and its gradient is the vector-Jacobian
    product of the operation.
"""

import numpy as np
import pytest
import torch
from torch.nn import functional as F

from graph import Session
from node import Placeholder, Variable
from tensor import Tensor
import loss
import ops


def upstream(op, x, x_value, rng):
    # runs once to learn the output shape, then multiplies by a random g
    session = Session(op, rng)
    shape = session.run({x: x_value}).shape
    g = Tensor.random(shape, rng) - 0.5
    terminal = ops.mul(op, Variable("g", value=g, require_grad=False))
    session = Session(terminal, rng)
    session.run({x: x_value})
    return session.backward(), g


def to_torch(t, order):
    return torch.tensor(np.ascontiguousarray(t.data.transpose(order)), requires_grad=True)


@pytest.mark.parametrize("frames, padding, stride", [(1, 0, 1), (1, 1, 2), (2, 2, 1), (2, 1, 3)])
def test_conv2d(frames, padding, stride):
    rng = np.random.default_rng(0)
    x = Placeholder((2, frames, 7, 6, 3), name="x")
    conv = ops.conv2d(x, 3, padding, stride, 4)
    x_value = Tensor.random(x.shape, rng)
    grads, g = upstream(conv, x, x_value, rng)
    kernel, bias = conv.parameters

    w_torch = torch.tensor(kernel.value.data, requires_grad=True)  # (O, F, Kw, Kh, C)
    b_torch = torch.tensor(bias.value.data.reshape(-1), requires_grad=True)
    x_torch = torch.tensor(x_value.data, requires_grad=True)
    total = 0
    for f in range(frames):
        xf = x_torch[:, f].permute(0, 3, 1, 2)
        wf = w_torch[:, f].permute(0, 3, 1, 2)
        yf = F.conv2d(xf, wf, b_torch, stride, padding).permute(0, 2, 3, 1)
        total = total + (yf * torch.tensor(g.data[:, f])).sum()
    total.backward()

    np.testing.assert_allclose(grads[x].data, x_torch.grad.numpy(), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(kernel.grad.data, w_torch.grad.numpy(), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(bias.grad.data.ravel(), b_torch.grad.numpy(), rtol=1e-4, atol=1e-4)


@pytest.mark.parametrize("padding, stride", [(0, 1), (1, 2)])
def test_conv3d(padding, stride):
    rng = np.random.default_rng(1)
    x = Placeholder((1, 5, 6, 6, 2), name="x")
    conv = ops.conv3d(x, 2, padding, stride, 3)
    x_value = Tensor.random(x.shape, rng)
    grads, g = upstream(conv, x, x_value, rng)
    kernel, bias = conv.parameters

    # torch layout (N, C, F, W, H)
    x_torch = to_torch(x_value, (0, 4, 1, 2, 3))
    w_torch = to_torch(kernel.value, (0, 4, 1, 2, 3))
    b_torch = torch.tensor(bias.value.data.reshape(-1), requires_grad=True)
    y = F.conv3d(x_torch, w_torch, b_torch, stride, (0, padding, padding))
    (y * torch.tensor(np.ascontiguousarray(g.data.transpose(0, 4, 1, 2, 3)))).sum().backward()

    np.testing.assert_allclose(grads[x].data, x_torch.grad.numpy().transpose(0, 2, 3, 4, 1), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(kernel.grad.data, w_torch.grad.numpy().transpose(0, 2, 3, 4, 1), rtol=1e-4, atol=1e-4)
    np.testing.assert_allclose(bias.grad.data.ravel(), b_torch.grad.numpy(), rtol=1e-4, atol=1e-4)


@pytest.mark.parametrize("factory, reference", [
    (ops.maxpooling, F.max_pool2d),
    (ops.avgpooling, F.avg_pool2d),
])
def test_pooling(factory, reference):
    rng = np.random.default_rng(2)
    x = Placeholder((2, 1, 4, 6, 3), name="x")
    x_value = Tensor.random(x.shape, rng)
    grads, g = upstream(factory(x, 2), x, x_value, rng)

    x_torch = torch.tensor(np.ascontiguousarray(x_value.data[:, 0].transpose(0, 3, 1, 2)), requires_grad=True)
    y = reference(x_torch, 2)
    g_torch = torch.tensor(np.ascontiguousarray(g.data[:, 0].transpose(0, 3, 1, 2)))
    (y * g_torch).sum().backward()

    expected = x_torch.grad.numpy().transpose(0, 2, 3, 1)[:, None]
    np.testing.assert_allclose(grads[x].data, expected, rtol=1e-5, atol=1e-6)


def test_full_connect():
    rng = np.random.default_rng(3)
    x = Placeholder((4, 1, 1, 1, 5), name="x")
    fc = ops.full_connect(x, 3)
    x_value = Tensor.random(x.shape, rng)
    grads, g = upstream(fc, x, x_value, rng)
    weight, bias = fc.parameters

    x_torch = torch.tensor(x_value.data.reshape(4, 5), requires_grad=True)
    w_torch = torch.tensor(weight.value.data.reshape(5, 3), requires_grad=True)
    b_torch = torch.tensor(bias.value.data.reshape(3), requires_grad=True)
    ((x_torch @ w_torch + b_torch) * torch.tensor(g.data.reshape(4, 3))).sum().backward()

    np.testing.assert_allclose(grads[x].data.reshape(4, 5), x_torch.grad.numpy(), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(weight.grad.data.reshape(5, 3), w_torch.grad.numpy(), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(bias.grad.data.reshape(3), b_torch.grad.numpy(), rtol=1e-5, atol=1e-6)


def test_activation_chain_with_mse():
    jax = pytest.importorskip("jax")
    jnp = pytest.importorskip("jax.numpy")
    jnn = pytest.importorskip("jax.nn")

    rng = np.random.default_rng(4)
    x = Placeholder((3, 1, 1, 1, 4), name="x")
    y_real = Placeholder((3, 1, 1, 1, 2), name="y_real")
    w = Variable("w", value=Tensor.random((1, 1, 1, 4, 2), rng) - 0.5)
    y = ops.leaky_relu(x)
    y = ops.sigmoid(y)
    y = ops.tanh(ops.matmul(y, w))
    y = ops.softmax(y)
    l = loss.mse(y, y_real)

    x_value = Tensor.random(x.shape, rng) - 0.5
    y_value = Tensor.random(y_real.shape, rng)
    session = Session(l, rng)
    session.run({x: x_value, y_real: y_value})
    grads = session.backward()

    def jax_graph(x, w):
        y0 = jnn.sigmoid(jnp.where(x >= 0, x, 0.1 * x))
        y1 = jnn.softmax(jnp.tanh(jnp.matmul(y0, w)), axis=-1)
        return jnp.mean(jnp.square(y1 - y_value.data.reshape(3, 2)))

    dx, dw = jax.grad(jax_graph, argnums=(0, 1))(x_value.data.reshape(3, 4), w.value.data.reshape(4, 2))
    # the MSE delta leaves out 2/N
    scale = y_value.length / 2
    np.testing.assert_allclose(grads[x].data.reshape(3, 4), np.asarray(dx) * scale, rtol=1e-4, atol=1e-5)
    np.testing.assert_allclose(w.grad.data.reshape(4, 2), np.asarray(dw) * scale, rtol=1e-4, atol=1e-5)
