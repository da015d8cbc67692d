# kvprefix

A small, self-contained model of prefix caching for transformer inference.
Prompts are cut into fixed-size token blocks. The key and value rows of each
block are computed once, stored in a pool of KV cache blocks, and found again
by a key built from the whole prefix that ends at that block. Later prompts
that share a prefix reuse the cached blocks instead of recomputing them, and
attention is evaluated over the cached and the freshly computed blocks
together.

Everything runs on the host with NumPy; devices are simulated by separate
block pools.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Commands

### kvprefix-run

Serves prompts through the prefix cache and prints, for every block, whether
it hit the cache (`Hit → GPU<device>, block_id=<id>`) or was newly allocated
(`Miss → Allocated`), a summary line with the number of queries and of
cached, new and total KV rows, and the attention output of each new query.

```
kvprefix-run
kvprefix-run 1,2,3,4 1,2,5,6 --tokens-per-block 2
```

Prompts are given as comma-separated token ids; without any, three demo
prompts (`1,2,3,4`, `1,2,5,6`, `3,4,7,8`) are used. Options: `--devices`
(default 1), `--blocks` (blocks per device, default 16),
`--tokens-per-block` (default 2), `--embed-dim` (default 32), `--head-dim`
(default 16).

### kvprefix-multi

The same, but prompts are handed out round-robin over `--devices` simulated
devices (default 2) that share one prefix cache. A block cached by another
device is read through its host-side copy.

```
kvprefix-multi
kvprefix-multi --devices 3
```

### kvprefix-directory

A block directory over ZeroMQ: it records which processing element (PE)
holds a block with a given hash, and at what address.

```
kvprefix-directory master --bind tcp://*:5555
kvprefix-directory worker --connect tcp://localhost:5555 --pe 1 --block-hash 12345
```

`master` serves requests on a REP socket until interrupted. `worker` looks
the block hash up; if the directory knows it, the worker prints the PE and
address it was registered with, otherwise it registers its own block under
that hash.

The wire format is plain ASCII:

| request | reply |
| --- | --- |
| `lookup:<hash>` | `found:<pe>:<address>` or `not_found` |
| `insert:<hash>:<pe>:<address>` | `ok` |
| anything malformed | `error:<message>` |

## Library use

- `kvprefix.block` — `KVCacheBlock` (id, device, reference count, K and V
  storage) and `FreeBlockQueue`, the FIFO of free blocks; `popleft()` raises
  `RuntimeError` when it is empty.
- `kvprefix.allocator` — `KVAllocator(device_id, num_blocks,
  tokens_per_block, head_dim)` carves one K pool and one V pool into blocks;
  `allocate()` hands out the oldest free block (raising `RuntimeError` when
  exhausted), `free(block)` returns one, `get_block(block_id)` fetches one
  by id, and `len()` is the number of free blocks.
- `kvprefix.prefix_cache` — `compute_prefix_hash(tokens)` builds the cache
  key (`[1, 2]` gives `"1,2,"`). `PrefixCacheManager` is a thread-safe map
  from keys to `KVLocation` records with reference counts: `lookup`,
  `insert` (count set to one), `retain`, `release` (raises `RuntimeError`
  below zero), `ref_count` and `can_evict`. `PrefixCacheManager.shared()`
  returns a process-wide instance.
- `kvprefix.computer` — `KVComputer(embed_dim, head_dim, tokens_per_block)`
  gives deterministic token embeddings (`embed_token`), fixed random Q, K and
  V weights, `project`, `query`, and `compute_and_fill(block, tokens)`, which
  writes each token's key and value rows into a block.
- `kvprefix.attention` — `softmax`, `attention_forward(q, k, v)` and
  `attention_blockwise_forward(q, k_blocks, v_blocks)` compute unscaled
  dot-product attention. `AttentionExecutor(head_dim)` offers `run` (on an
  `AttentionInput` of cached blocks plus new rows), `run_dense` and
  `run_blockwise` (cached locations first, then freshly filled blocks).
- `kvprefix.runner` — `PrefixCacheRunner` drives prompts through its own
  prefix cache and returns a `PromptResult` per prompt, holding one
  `BlockEvent` per block, the KV counts and the attention outputs;
  `format_result` renders one as text.
- `kvprefix.multi` — `run_multi_device(prompts, num_devices, ...)` and
  `round_robin_device(prompt_index, num_devices)`.
- `kvprefix.directory` — `BlockDirectory` (`lookup`, `insert`, `handle` for
  one wire request, `serve` on a REP-style socket), `DirectoryClient` for a
  REQ-style socket, and `DirectoryEntry`.

```python
from kvprefix.prefix_cache import PrefixCacheManager, compute_prefix_hash
from kvprefix.runner import PrefixCacheRunner, format_result

runner = PrefixCacheRunner(1, 16, 2, 32, 16)
for result in runner.run([[1, 2, 3, 4], [1, 2, 5, 6]]):
    print(format_result(result))

cache = PrefixCacheManager()
key = compute_prefix_hash([1, 2])
print(cache.lookup(key))  # None until a location is inserted
```

## What it does not do

- No real accelerator memory is used: devices are NumPy block pools in one
  process.
- The runners never release blocks after a prompt; a long enough run
  exhausts the pool and `allocate()` raises `RuntimeError`.
- The directory only records where blocks live. A worker that finds a block
  registered by another PE prints its location but does not fetch its data,
  and the directory is not consulted by `kvprefix-run` or `kvprefix-multi`.