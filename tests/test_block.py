import pytest

from kvprefix.block import FreeBlockQueue, KVCacheBlock


def _blocks(count):
    return [KVCacheBlock(block_id=i, device_id=0) for i in range(count)]


def test_reference_counting():
    block = KVCacheBlock(block_id=3, device_id=1)
    block.incr_ref()
    block.incr_ref()
    block.decr_ref()
    assert block.ref_cnt == 1


def test_reset_hash_keeps_identity_and_refs():
    block = KVCacheBlock(block_id=2, device_id=0, ref_cnt=4)
    block.reset_hash()
    assert (block.block_id, block.ref_cnt) == (2, 4)


def test_str_format():
    block = KVCacheBlock(block_id=5, device_id=1, ref_cnt=2, is_remote=True)
    assert str(block) == "[KVCacheBlock] id=5 dev=1 ref_cnt=2 is_remote=1"


def test_queue_is_fifo():
    blocks = _blocks(3)
    queue = FreeBlockQueue(blocks)
    assert len(queue) == 3
    assert [queue.popleft().block_id for _ in range(3)] == [0, 1, 2]
    assert len(queue) == 0


def test_popleft_on_empty_raises():
    queue = FreeBlockQueue([])
    with pytest.raises(RuntimeError, match="No free blocks available"):
        queue.popleft()


def test_append_goes_to_tail():
    blocks = _blocks(2)
    queue = FreeBlockQueue(blocks)
    first = queue.popleft()
    queue.append(first)
    assert queue.popleft() is blocks[1]
    assert queue.popleft() is first


def test_append_none_is_ignored():
    queue = FreeBlockQueue(_blocks(1))
    queue.append(None)
    assert len(queue) == 1


def test_append_to_empty_queue():
    queue = FreeBlockQueue([])
    block = KVCacheBlock(block_id=9, device_id=0)
    queue.append(block)
    assert len(queue) == 1
    assert queue.popleft() is block