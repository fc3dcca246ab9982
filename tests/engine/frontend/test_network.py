"""Tests for the seqgraph.engine.frontend.network module."""

# SPDX-License-Identifier: Apache-2.0

import struct

import numpy as np
import pytest

from seqgraph.engine.errors import ConfigurationError
from seqgraph.engine.frontend import graph, network, persist


def _rnn_network():
    net = network.Network()
    x = net.new("InputValue", 2, name="x")
    W = net.new("LearnableParameter", 3, 2, init=np.arange(6.0).reshape(3, 2), name="W")
    U = net.new(graph.learnable_parameter, 3, 3, init=0.5, name="U")
    h_prev = net.new("PastValue", None, rows=3, initial_value=0.25, time_step=2, name="h_prev")
    pre = net.new("Plus", net.new("Times", W, x, name="wx"), net.new("Times", U, h_prev, name="uh"), name="pre")
    h = net.new("Tanh", pre, name="h")
    h_prev.set_input(0, h)
    net.new("SumElements", h, name="out")
    return net


def test_add_and_new():
    """Test node registration by name and by kind."""
    net = network.Network(device=2)
    x = net.new("InputValue", 4, name="x")
    y = net.new(graph.tanh, x, name="y")

    assert len(net) == 2
    assert list(net) == [x, y]
    assert net.node("y") is y
    assert "x" in net and x in net
    assert graph.input_value(4) not in net
    assert y.device == 2

    # Adding the same node twice is a no-op
    assert net.add(x) is x
    assert len(net) == 2

    with pytest.raises(ConfigurationError, match="duplicate node name 'x'"):
        net.add(graph.input_value(4, name="x"))
    with pytest.raises(ConfigurationError, match="unknown operation 'Frobnicate'"):
        net.new("Frobnicate", x)
    with pytest.raises(ConfigurationError, match="no node named 'z'"):
        net.node("z")


def test_parameters():
    """Test that parameters() returns only the learnable parameters."""
    net = _rnn_network()
    assert [node.name for node in net.parameters()] == ["W", "U"]


def test_validate_and_compile():
    """Test that compiling validates and computes gradient requirements."""
    net = _rnn_network()
    out = net.node("out")

    plan = net.compile(out)

    assert len(plan.loops) == 1
    assert net.node("h").value.shape == (3, 0)
    assert net.node("h_prev").value.shape == (3, 0)
    assert out.value.shape == (1, 1)
    assert out.needs_gradient
    assert net.node("h_prev").needs_gradient
    assert not net.node("x").needs_gradient

    with pytest.raises(ConfigurationError, match="at least one root"):
        net.compile()


def test_validate_rejects_foreign_nodes():
    """Test that validation fails on nodes the network does not own."""
    net = network.Network()
    x = graph.input_value(2, name="x")
    y = net.new("Tanh", x, name="y")

    with pytest.raises(ConfigurationError, match="does not belong to this network"):
        net.validate(y)


def test_describe():
    """Test the human readable network description."""
    net = network.Network()
    x = net.new("InputValue", 2, name="x")
    net.new("Tanh", x, name="y")
    net.validate()

    assert net.describe() == "x : InputValue 2 x T*S ()\ny : Tanh 2 x T*S (x)"


def test_save_and_load(tmp_path):
    """Test that a saved network loads back with the same structure and state."""
    net = _rnn_network()
    path = tmp_path / "model.bin"

    net.save(path)
    loaded = network.Network.load(path)

    assert [node.name for node in loaded] == [node.name for node in net]
    for node in net:
        other = loaded.node(node.name)
        assert type(other) is type(node)
        assert [None if c is None else c.name for c in other.inputs] == [
            None if c is None else c.name for c in node.inputs
        ]
    assert np.array_equal(loaded.node("W").value, net.node("W").value)
    assert loaded.node("W").parameter_update_required
    assert loaded.node("x").rows == 2
    assert loaded.node("h_prev").time_step == 2
    assert loaded.node("h_prev").initial_value == 0.25
    assert loaded.node("h_prev").rows == 3

    # The loaded network compiles to the same plan shape
    plan = loaded.compile(loaded.node("out"))
    assert {node.name for node in plan.loops[0].nodes} == {"h_prev", "uh", "pre", "h"}


def test_load_version_one(tmp_path):
    """Test that a version 1 stream loads past values with a delay of one."""
    net = _rnn_network()
    path = tmp_path / "model-v1.bin"

    net.save(path, model_version=1)
    loaded = network.Network.load(path)

    assert loaded.node("h_prev").time_step == 1
    assert loaded.node("h_prev").initial_value == 0.25


def test_load_errors(tmp_path):
    """Test that malformed streams are rejected."""
    path = tmp_path / "bad.bin"

    path.write_bytes(b"NOTMAGIC" + struct.pack("<I", 2))
    with pytest.raises(persist.ModelFormatError, match="invalid magic"):
        network.Network.load(path)

    path.write_bytes(persist.MAGIC + struct.pack("<I", 99))
    with pytest.raises(persist.ModelFormatError, match="unsupported model version 99"):
        network.Network.load(path)

    path.write_bytes(persist.MAGIC + struct.pack("<I", 2) + struct.pack("<I", 1))
    with pytest.raises(persist.ModelFormatError, match="truncated"):
        network.Network.load(path)

    with pytest.raises(persist.ModelFormatError):
        network.Network().save(tmp_path / "future.bin", model_version=3)


def test_clear():
    """Test that clearing the network disconnects and forgets the nodes."""
    net = _rnn_network()
    h = net.node("h")

    net.clear()

    assert len(net) == 0
    assert "h" not in net
    assert h.inputs == []
