[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "tempus"
version = "0.1.0"
description = "A scheduler for deferred jobs: HTTP callbacks and Kafka messages, run at a set time, retried with back-off."
requires-python = ">=3.11"
keywords = ["scheduler", "jobs", "delayed", "http", "kafka", "retry", "backoff"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Environment :: Web Environment",
    "Framework :: FastAPI",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Office/Business :: Scheduling",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
]
dependencies = [
    "sqlalchemy>=2.0",
    "httpx>=0.27",
    "fastapi>=0.110",
    "pydantic>=2.5",
    "uvicorn>=0.27",
    "python-dotenv>=1.0",
]

[project.optional-dependencies]
test = [
    "pytest>=8.0",
    "httpx>=0.27",
]

[project.scripts]
tempus = "tempus.engine:main"
tempus-api = "tempus.api:main"
tempus-migrate = "tempus.schema:main"

[tool.hatch.build.targets.wheel]
packages = ["tempus"]

[tool.hatch.build.targets.sdist]
include = ["tempus", "tests", "README.md", "pyproject.toml"]

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
check_untyped_defs = true
