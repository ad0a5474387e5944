"""
    Here several examples can be found for
    checking the back-propagation against
    torch autograd and jax.

    Our MSE delta is (y_predicted - y_real) without the 2/N factor,
    so the reference gradients are rescaled by N/2 before comparing.

    jax is not a runtime dependency: install the examples extra
    (pip install .[examples]) before running this script.
"""

import numpy as np
from graph import Session
from node import Placeholder
from tensor import Tensor
import loss
import ops

from jax import grad
import jax.numpy as jnp
import jax.nn as jnn

from torch.nn import functional as F
import torch


# compare the backward tensors
def calc_total_diff(dy_autograd, dy_expected):
    return np.sqrt(np.square(dy_autograd - dy_expected).sum())


def convolution_grad_example():

    # parameters
    xb = 2
    xc = 3
    xh = 6
    xw = 6

    width = 3
    padding = 1
    stride = 2

    yc = 4
    yh = (xh + 2 * padding - width) // stride + 1
    yw = (xw + 2 * padding - width) // stride + 1

    # build graph for convolution
    x = Placeholder((xb, 1, xw, xh, xc), name="x")
    y_real = Placeholder((xb, 1, yw, yh, yc), name="y_real")
    conv = ops.conv2d(x, width, padding, stride, yc)
    l = loss.mse(conv, y_real)

    rng = np.random.default_rng(1)
    x_value = Tensor.random(x.shape, rng)
    y_value = Tensor.random(y_real.shape, rng)

    session = Session(l, rng)
    session.run({x: x_value, y_real: y_value})
    grads = session.backward()
    kernel, bias = conv.parameters

    # torch implementation, (N, C, W, H) layout
    def torch_graph(x):
        y = F.conv2d(x, w_torch, b_torch, stride, padding)
        y_diff = y - torch.tensor(y_value.data[:, 0].transpose(0, 3, 1, 2))
        torch_mse_loss = torch.mean(torch.square(y_diff))
        return torch_mse_loss

    w_torch = torch.tensor(kernel.value.data[:, 0].transpose(0, 3, 1, 2), requires_grad=True)
    b_torch = torch.tensor(bias.value.data.reshape(-1), requires_grad=True)
    x_torch = torch.tensor(x_value.data[:, 0].transpose(0, 3, 1, 2), requires_grad=True)
    tloss = torch_graph(x_torch)
    tloss.backward()

    scale = y_value.length / 2
    dw = calc_total_diff(kernel.grad.data[:, 0], w_torch.grad.numpy().transpose(0, 2, 3, 1) * scale)
    dx = calc_total_diff(grads[x].data[:, 0], x_torch.grad.numpy().transpose(0, 2, 3, 1) * scale)
    db = calc_total_diff(bias.grad.data.reshape(-1), b_torch.grad.numpy() * scale)

    print("Convolution - difference in grads: ")
    print(f"  DW: {dw}")
    print(f"  DX: {dx}")
    print(f"  DB: {db}")


def dense_grad_example():

    # build graph for two dense layers
    x = Placeholder((4, 1, 1, 1, 5), name="x")
    y_real = Placeholder((4, 1, 1, 1, 3), name="y_real")
    fc1 = ops.full_connect(x, 8)
    fc2 = ops.full_connect(ops.tanh(fc1), 3)
    l = loss.mse(ops.sigmoid(fc2), y_real)

    rng = np.random.default_rng(2)
    x_value = Tensor.random(x.shape, rng) - 0.5
    y_value = Tensor.random(y_real.shape, rng)

    session = Session(l, rng)
    session.run({x: x_value, y_real: y_value})
    grads = session.backward()
    w1, b1 = (p.value.data.reshape(p.value.shape[3], -1) for p in fc1.parameters)
    w2, b2 = (p.value.data.reshape(p.value.shape[3], -1) for p in fc2.parameters)

    # jax implementation
    def jax_graph(x, w1):
        y0 = jnp.tanh(jnp.matmul(x, w1) + b1)
        y = jnn.sigmoid(jnp.matmul(y0, w2) + b2)
        y_diff = jnp.subtract(y_value.data.reshape(4, 3), y)
        jax_mse_loss = jnp.mean(jnp.square(y_diff))
        return jax_mse_loss

    grad_jax_sgraph = grad(jax_graph, argnums=(0, 1))
    x_jax_grad, w1_jax_grad = grad_jax_sgraph(x_value.data.reshape(4, 5), w1)

    scale = y_value.length / 2
    dx = calc_total_diff(grads[x].data.reshape(4, 5), np.asarray(x_jax_grad) * scale)
    dw = calc_total_diff(fc1.parameters[0].grad.data.reshape(5, 8), np.asarray(w1_jax_grad) * scale)

    print("Dense - difference in grads: ")
    print(f"  DX: {dx}")
    print(f"  DW: {dw}")


def cnn_example():

    # small classifier on 28x28 single channel images
    x = Placeholder((None, 1, 28, 28, 1), name="x")
    label = Placeholder((None, 1, 1, 1, 10), name="label")

    y = ops.conv2d(x, 5, 2, 1, 8)
    y = ops.relu(ops.maxpooling(y, 2))
    y = ops.conv2d(y, 3, 1, 1, 16)
    y = ops.relu(ops.maxpooling(y, 2))
    y = ops.flatten(y)
    y = ops.sigmoid(ops.full_connect(y, 10))
    y = ops.softmax(y)
    l = loss.cross_entropy(y, label)

    rng = np.random.default_rng(3)
    images = Tensor.random((2, 1, 28, 28, 1), rng)
    labels = Tensor.from_array(np.eye(10)[[3, 7]].reshape(2, 1, 1, 1, 10))

    session = Session(l, rng)
    output = session.run({x: images, label: labels})
    grads = session.backward()

    print("CNN - forward/backward: ")
    print(f"  loss: {output.get(0)}")
    print(f"  variables: {len(session.graph.variables)}")
    for variable in session.graph.variables:
        print(f"  |d {variable.name}|: {np.abs(variable.grad.data).sum()}")
    print(f"  |d x|: {np.abs(grads[x].data).sum()}")


if __name__ == "__main__":
    convolution_grad_example()
    dense_grad_example()
    cnn_example()
