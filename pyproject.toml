[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fraudguard"
version = "0.1.0"
description = "Rule-based transaction fraud assessment with fast and slow paths, outbox delivery and small HTTP APIs"
requires-python = ">=3.11"
keywords = [
    "fraud",
    "fraud-detection",
    "risk-scoring",
    "payments",
    "transactions",
    "outbox",
    "circuit-breaker",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Financial and Insurance Industry",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Office/Business :: Financial",
    "Typing :: Typed",
]
dependencies = [
    "starlette",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "httpx",
]

[tool.hatch.build.targets.wheel]
packages = ["fraudguard"]

[tool.hatch.build.targets.sdist]
include = [
    "fraudguard",
    "tests",
    "README.md",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
no_implicit_optional = true
