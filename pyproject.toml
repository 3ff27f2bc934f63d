[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chcache"
version = "0.1.0"
description = "Buffered, batching row writer for ClickHouse with retries, back-off and metrics"
requires-python = ">=3.10"
dependencies = []
keywords = ["clickhouse", "batch", "buffer", "insert", "database"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Front-Ends",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["chcache"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
