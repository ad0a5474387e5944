import logging
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np

from errors import InvalidOperation, MissingFeed, ShapeMismatch
from node import Node, NodeType, Operation, Placeholder, Variable
from tensor import Tensor

logger = logging.getLogger(__name__)

DEFAULT_SEED = 0


class Graph:
    """
        Input closure of a terminal node.

        collect() walks the inputs depth first and appends each node
        after all of its inputs (topological post-order). A node reached
        twice is kept once, so it is evaluated once per run.
    """
    def __init__(self):
        self.placeholders: List[Placeholder] = []
        self.variables: List[Variable] = []
        self.operations: List[Operation] = []
        self.nodes: List[Node] = []  # all of the above, in evaluation order
        self._members = set()

    def __contains__(self, node: Node) -> bool:
        return node in self._members

    def __len__(self):
        return len(self.nodes)

    def collect(self, root: Node):
        if root in self._members:
            return
        self._members.add(root)
        if root.node_type is NodeType.OPERATION:
            for node in root.inputs:
                self.collect(node)
            self.operations.append(root)
        elif root.node_type is NodeType.PLACEHOLDER:
            self.placeholders.append(root)
        else:
            self.variables.append(root)
        self.nodes.append(root)

    def insert_parameters(self, op: Operation, params: List[Variable]):
        # parameters created by a late build() go right before their owner
        at = self.nodes.index(op)
        for param in params:
            if param in self._members:
                continue
            self._members.add(param)
            self.variables.append(param)
            self.nodes.insert(at, param)
            at += 1

    def consumers(self) -> Dict[Node, List[Tuple[Operation, int]]]:
        """
            Backward edges, derived from the forward inputs.

            Each edge is (consumer, input position), an operation reading
            the same node twice contributes two edges.
        """
        edges = {node: [] for node in self.nodes}
        for op in self.operations:
            for index, node in enumerate(op.inputs):
                edges.setdefault(node, []).append((op, index))
        return edges


class Session:
    """
        Runs the graph collected from a terminal node.

        Operation parameters are built on the first run, drawing their
        initial values from rng in evaluation order.
    """
    def __init__(self, terminal: Node, rng: Optional[np.random.Generator] = None):
        self.terminal = terminal
        self.rng = rng if rng is not None else np.random.default_rng(DEFAULT_SEED)
        self.graph = Graph()
        self.graph.collect(terminal)
        logger.debug("collected %d placeholders, %d variables, %d operations",
                     len(self.graph.placeholders), len(self.graph.variables), len(self.graph.operations))

    def run(self, feed: Optional[Mapping[Placeholder, Tensor]] = None) -> Tensor:
        feed = feed if feed is not None else {}
        for node in list(self.graph.nodes):
            if node.node_type is NodeType.PLACEHOLDER:
                node.output = self._feed(node, feed)
            elif node.node_type is NodeType.VARIABLE:
                node.output = node.value.copy()
            else:
                if not node.built:
                    node.build(node.inputs[0].output.shape, self.rng)
                self._register_parameters(node)
                node.output = node.compute(node.input_values())
                logger.debug("computed %r: %r", node, node.output.shape)
        return self.terminal.output

    def _feed(self, node: Placeholder, feed: Mapping[Placeholder, Tensor]) -> Tensor:
        if node not in feed:
            raise MissingFeed(f"no value fed for {node!r}")
        value = feed[node]
        if not isinstance(value, Tensor):
            value = Tensor.from_array(value)
        if not node.shape.accepts(value.shape):
            raise ShapeMismatch(f"{node!r} expects {node.shape!r}, got {value.shape!r}")
        return value.copy()

    def _register_parameters(self, op: Operation):
        # the op may have been built by another session sharing it
        params = [param for param in op.parameters if param not in self.graph]
        for param in params:
            param.output = param.value.copy()
        self.graph.insert_parameters(op, params)

    def backward(self, terminal: Optional[Node] = None) -> Dict[Node, Tensor]:
        """
            Reverse pass from terminal (the session's terminal by default).

            The gradient of a node is the sum of the deltas its consumers
            send back along each input edge. Nodes are visited in reverse
            evaluation order, so every consumer is done before its inputs.

            Returns the gradient of every node upstream of terminal and
            overwrites Variable.grad of the trainable variables.
        """
        terminal = self.terminal if terminal is None else terminal
        if terminal not in self.graph:
            raise InvalidOperation(f"{terminal!r} is not part of this session's graph")
        if terminal.output is None:
            raise InvalidOperation("backward requires a completed run")

        edges = self.graph.consumers()
        grads: Dict[Node, Tensor] = {}
        for node in reversed(self.graph.nodes):
            if node is terminal:
                grads[node] = Tensor.ones(node.output.shape, node.output.dtype)
                continue
            if node.node_type is NodeType.VARIABLE and not node.require_grad:
                continue
            total = None
            for consumer, index in edges.get(node, []):
                if consumer not in grads:
                    continue  # not upstream of terminal
                delta = consumer.backward(grads[consumer], index)
                total = delta if total is None else total + delta
            if total is not None:
                grads[node] = total
        logger.debug("backward from %r reached %d nodes", terminal, len(grads))

        for variable in self.graph.variables:
            if variable.require_grad:
                grad = grads.get(variable)
                if grad is None:
                    variable.grad = Tensor.zeros(variable.value.shape, variable.value.dtype)
                else:
                    variable.grad = Tensor.from_array(grad.data, dtype=variable.value.dtype)  # stored like the value
        return grads
