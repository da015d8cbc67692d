import numpy as np
import pytest

from kvprefix.multi import main, round_robin_device, run_multi_device
from kvprefix.runner import DEFAULT_PROMPTS, PrefixCacheRunner


@pytest.mark.parametrize(
    "index, devices, expected",
    [(0, 2, 0), (1, 2, 1), (2, 2, 0), (5, 3, 2), (4, 1, 0)],
)
def test_round_robin_device(index, devices, expected):
    assert round_robin_device(index, devices) == expected


def test_round_robin_rejects_no_devices():
    with pytest.raises(ValueError):
        round_robin_device(0, 0)


def test_round_robin_rejects_negative_index():
    with pytest.raises(ValueError):
        round_robin_device(-1, 2)


def test_prompts_spread_over_devices():
    results = run_multi_device(DEFAULT_PROMPTS, num_devices=2)
    assert [r.device_id for r in results] == [0, 1, 0]


def test_shared_prefix_hits_block_of_other_device():
    results = run_multi_device(DEFAULT_PROMPTS, num_devices=2)
    first, second, third = results
    assert [e.hit for e in first.events] == [False, False]
    assert [e.hit for e in second.events] == [True, False]
    hit = second.events[0]
    assert hit.device_id == 0
    assert hit.block_id == first.events[0].block_id
    # The miss on device 1 comes from its own fresh pool.
    assert second.events[1].device_id == 1
    assert second.events[1].block_id == 0
    # Same tokens at a different prefix do not hit.
    assert [e.hit for e in third.events] == [False, False]


def test_counts_and_output_shapes():
    results = run_multi_device(DEFAULT_PROMPTS, num_devices=2, head_dim=16)
    second = results[1]
    assert second.num_queries == 2
    assert second.cached_kv == 2
    assert second.new_kv == 2
    assert second.total_kv == 4
    assert second.outputs.shape == (2, 16)
    assert results[0].outputs.shape == (4, 16)


def test_remote_copy_gives_same_outputs_as_single_device():
    multi = run_multi_device(DEFAULT_PROMPTS, num_devices=2)
    single = PrefixCacheRunner(num_devices=1).run(DEFAULT_PROMPTS)
    for a, b in zip(multi, single):
        assert a.outputs.shape == b.outputs.shape
        assert np.allclose(a.outputs, b.outputs, atol=1e-6)


def test_exhausted_pool_raises():
    with pytest.raises(RuntimeError):
        run_multi_device([(1, 2, 3, 4)], num_devices=2, num_blocks=1)


def test_zero_devices_rejected():
    with pytest.raises(ValueError):
        run_multi_device(DEFAULT_PROMPTS, num_devices=0)


def test_main_prints_report(capsys):
    assert main(["1,2,3,4", "1,2,5,6"]) == 0
    out = capsys.readouterr().out
    assert "==== Prompt 0: 1 2 3 4 " in out
    assert "Hit → GPU0, block_id=0" in out
    assert out.count("Attention output") == 6


def test_main_default_prompts(capsys):
    assert main([]) == 0
    out = capsys.readouterr().out
    assert out.count("==== Prompt") == len(DEFAULT_PROMPTS)