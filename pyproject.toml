[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "natstier"
version = "0.1.0"
description = "Tiered block storage metadata, memory caching, retention and retrieval APIs for message streams"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "tiered-storage",
    "message-streams",
    "key-value",
    "object-store",
    "metadata",
    "lru-cache",
    "retention",
    "wsgi",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: System :: Archiving",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["natstier"]

[tool.hatch.build.targets.sdist]
include = [
    "natstier",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
