import numpy as np
import pytest

from kvprefix.allocator import KVAllocator
from kvprefix.attention import (
    AttentionExecutor,
    AttentionInput,
    attention_blockwise_forward,
    attention_forward,
    softmax,
)
from kvprefix.computer import KVComputer
from kvprefix.prefix_cache import KVLocation

HEAD_DIM = 4
TPB = 2


def _random(shape, seed):
    return np.random.default_rng(seed).standard_normal(shape).astype(np.float32)


def _filled_allocator(tokens_list):
    allocator = KVAllocator(0, len(tokens_list), TPB, HEAD_DIM)
    computer = KVComputer(8, HEAD_DIM, TPB)
    blocks = []
    for tokens in tokens_list:
        block = allocator.allocate()
        computer.compute_and_fill(block, tokens)
        blocks.append(block)
    return blocks, computer


def test_softmax_sums_to_one_and_is_monotone():
    probs = softmax([1.0, 2.0, 3.0])
    assert probs.sum() == pytest.approx(1.0, abs=1e-6)
    assert probs[0] < probs[1] < probs[2]


def test_softmax_shift_invariant():
    a = softmax([0.5, -1.0, 2.0])
    b = softmax([10.5, 9.0, 12.0])
    np.testing.assert_allclose(a, b, rtol=1e-5)


def test_softmax_equal_logits_uniform():
    np.testing.assert_allclose(softmax([5.0, 5.0, 5.0, 5.0]), [0.25] * 4)


def test_softmax_large_logits_stay_finite():
    probs = softmax([1000.0, 0.0])
    assert np.isfinite(probs).sum() == 2
    assert probs[0] == pytest.approx(1.0)


def test_softmax_empty_raises():
    with pytest.raises(ValueError):
        softmax([])


def test_single_kv_row_returns_its_value():
    q = _random((3, HEAD_DIM), 1)
    k = _random((1, HEAD_DIM), 2)
    v = _random((1, HEAD_DIM), 3)
    out = attention_forward(q, k, v)
    assert out.shape == (3, HEAD_DIM)
    np.testing.assert_allclose(out, np.repeat(v, 3, axis=0), rtol=1e-6)


def test_identical_keys_average_values():
    q = _random((2, HEAD_DIM), 4)
    k = np.ones((5, HEAD_DIM), dtype=np.float32)
    v = _random((5, HEAD_DIM), 5)
    out = attention_forward(q, k, v)
    np.testing.assert_allclose(out[0], v.mean(axis=0), rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(out[1], v.mean(axis=0), rtol=1e-5, atol=1e-6)


def test_output_is_convex_combination_of_values():
    q = _random((6, HEAD_DIM), 6)
    k = _random((7, HEAD_DIM), 7)
    v = _random((7, HEAD_DIM), 8)
    out = attention_forward(q, k, v)
    assert out.shape == (6, HEAD_DIM)
    np.testing.assert_array_less(np.broadcast_to(v.min(axis=0) - 1e-5, out.shape), out)
    np.testing.assert_array_less(out, np.broadcast_to(v.max(axis=0) + 1e-5, out.shape))


def test_attention_forward_rejects_mismatched_kv():
    with pytest.raises(ValueError):
        attention_forward(_random((1, HEAD_DIM), 1), _random((3, HEAD_DIM), 2), _random((2, HEAD_DIM), 3))


def test_attention_forward_rejects_empty_kv():
    with pytest.raises(ValueError):
        attention_forward(_random((1, HEAD_DIM), 1), np.zeros((0, HEAD_DIM)), np.zeros((0, HEAD_DIM)))


def test_attention_forward_with_no_queries():
    out = attention_forward([], _random((2, HEAD_DIM), 2), _random((2, HEAD_DIM), 3))
    assert out.shape == (0, HEAD_DIM)


def test_blockwise_matches_dense():
    q = _random((3, HEAD_DIM), 9)
    k_blocks = [_random((TPB, HEAD_DIM), 10 + i) for i in range(3)]
    v_blocks = [_random((TPB, HEAD_DIM), 20 + i) for i in range(3)]
    blockwise = attention_blockwise_forward(q, k_blocks, v_blocks)
    dense = attention_forward(q, np.concatenate(k_blocks), np.concatenate(v_blocks))
    np.testing.assert_allclose(blockwise, dense, rtol=1e-6)


def test_blockwise_rejects_unequal_block_lists():
    with pytest.raises(ValueError):
        attention_blockwise_forward(_random((1, HEAD_DIM), 1), [_random((TPB, HEAD_DIM), 2)], [])


def test_run_cached_then_new_matches_dense():
    blocks, computer = _filled_allocator([[1, 2], [3, 4]])
    k_new = _random((3, HEAD_DIM), 30)
    v_new = _random((3, HEAD_DIM), 31)
    q = _random((2, HEAD_DIM), 32)
    executor = AttentionExecutor(HEAD_DIM)
    out = executor.run(
        AttentionInput(
            query=q,
            head_dim=HEAD_DIM,
            tokens_per_block=TPB,
            cached_blocks=blocks,
            k_new=k_new,
            v_new=v_new,
        )
    )
    keys = np.concatenate([blocks[0].k, blocks[1].k, k_new])
    values = np.concatenate([blocks[0].v, blocks[1].v, v_new])
    np.testing.assert_allclose(out, executor.run_dense(q, keys, values), rtol=1e-6)


def test_run_rejects_head_dim_mismatch():
    executor = AttentionExecutor(HEAD_DIM)
    with pytest.raises(ValueError):
        executor.run(AttentionInput(query=_random((1, 8), 1), head_dim=8, k_new=_random((1, 8), 2), v_new=_random((1, 8), 3)))


def test_run_blockwise_remote_copy_equals_local():
    blocks, _ = _filled_allocator([[5, 6], [7, 8]])
    cached_block, fresh_block = blocks
    q = _random((2, HEAD_DIM), 40)
    executor = AttentionExecutor(HEAD_DIM)

    local = KVLocation(device_id=0, block_id=0, local_k=cached_block.k, local_v=cached_block.v)
    remote = KVLocation(
        device_id=1,
        block_id=0,
        remote_host_k=cached_block.k.reshape(-1).copy(),
        remote_host_v=cached_block.v.reshape(-1).copy(),
    )
    via_local = executor.run_blockwise(q, [fresh_block], [local], TPB, 0)
    via_remote = executor.run_blockwise(q, [fresh_block], [remote], TPB, 0)
    np.testing.assert_allclose(via_local, via_remote, rtol=1e-6)

    expected = attention_forward(
        q,
        np.concatenate([cached_block.k, fresh_block.k]),
        np.concatenate([cached_block.v, fresh_block.v]),
    )
    np.testing.assert_allclose(via_local, expected, rtol=1e-6)


def test_run_blockwise_missing_location_raises():
    blocks, _ = _filled_allocator([[1, 2]])
    with pytest.raises(ValueError):
        AttentionExecutor(HEAD_DIM).run_blockwise(_random((1, HEAD_DIM), 1), blocks, [None], TPB, 0)


def test_run_blockwise_without_blocks_raises():
    with pytest.raises(ValueError):
        AttentionExecutor(HEAD_DIM).run_blockwise(_random((1, HEAD_DIM), 1), [], [], TPB, 0)


def test_executor_rejects_non_positive_head_dim():
    with pytest.raises(ValueError):
        AttentionExecutor(0)