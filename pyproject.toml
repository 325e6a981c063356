[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kadlookup"
version = "0.1.0"
description = "Kademlia lookup state, provider records, routing table diversity filtering and refresh scheduling"
requires-python = ">=3.10"
keywords = ["kademlia", "dht", "peer-to-peer", "lookup", "routing", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Distributed Computing",
    "Typing :: Typed",
]
dependencies = [
    "cachetools",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["kadlookup"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
