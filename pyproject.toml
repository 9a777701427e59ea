[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "billoutbox"
version = "0.1.0"
description = "Transactional outbox for billing events: store events in SQLite and dispatch them in the background with retries and backoff."
requires-python = ">=3.10"
dependencies = []
keywords = ["outbox", "events", "billing", "dispatcher", "retry", "sqlite"]
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
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["billoutbox"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
