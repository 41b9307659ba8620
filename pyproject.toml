[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tupleclass"
version = "0.1.0"
description = "Tuple-space packet classification: dynamic tuple ranges, dimension-range optimisation and bit-selecting decision tables"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "packet classification",
    "tuple space search",
    "dynamic tuple",
    "firewall",
    "access control list",
    "5-tuple",
    "pcap",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Telecommunications Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: System :: Networking :: Firewalls",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
tupleclass-traces = "tupleclass.traces:main"

[tool.hatch.build.targets.wheel]
packages = ["tupleclass"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
