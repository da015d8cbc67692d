[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kvprefix"
version = "0.1.0"
description = "Prefix-keyed KV cache blocks, a block allocator, blockwise attention and a ZeroMQ block directory for simulated multi-device inference"
requires-python = ">=3.10"
keywords = ["kv-cache", "prefix-cache", "attention", "transformer", "inference", "zeromq"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Artificial Intelligence",
]
dependencies = [
    "numpy",
    "pyzmq",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
kvprefix-run = "kvprefix.runner:main"
kvprefix-multi = "kvprefix.multi:main"
kvprefix-directory = "kvprefix.directory:main"

[tool.hatch.build.targets.wheel]
packages = ["kvprefix"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
