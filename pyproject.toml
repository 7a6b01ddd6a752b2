[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodesocket"
version = "0.1.0"
description = "Asyncio UDP transport for peer-to-peer nodes with packet filtering, GCRA rate limiting and ban lists"
requires-python = ">=3.11"
dependencies = []
keywords = ["udp", "asyncio", "rate-limiting", "gcra", "packet-filter", "p2p"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest", "pytest-asyncio"]

[tool.hatch.build.targets.wheel]
packages = ["nodesocket"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
strict = true
