[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sandboxguard"
version = "0.1.0"
description = "Security monitoring and telemetry collection services for code-execution sandboxes"
requires-python = ">=3.11"
keywords = [
    "sandbox",
    "security",
    "monitoring",
    "falco",
    "ebpf",
    "telemetry",
    "policy",
    "quarantine",
    "prometheus",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: FastAPI",
    "Topic :: System :: Monitoring",
    "Topic :: Security",
]
dependencies = [
    "fastapi",
    "pydantic>=2",
    "sqlalchemy>=2",
    "uvicorn",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "httpx",
]

[project.scripts]
sandboxguard-telemetry = "sandboxguard.telemetry.app:main"

[tool.hatch.build.targets.wheel]
packages = ["sandboxguard"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
