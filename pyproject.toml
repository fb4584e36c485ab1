[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "coredump-composer"
version = "9.0.0"
description = "Collect a crashing process's core dump and its container runtime details into a single zip archive"
requires-python = ">=3.10"
keywords = ["core dump", "crash", "kubernetes", "crictl", "container runtime", "diagnostics"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "python-dotenv",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
coredump-composer = "coredump_composer.composer:main"

[tool.hatch.build.targets.wheel]
packages = ["coredump_composer"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
