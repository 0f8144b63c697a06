[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pvcautoresizer"
version = "0.1.0"
description = "Automatic resizer for Kubernetes PersistentVolumeClaims that run low on free filesystem capacity"
requires-python = ">=3.10"
keywords = ["kubernetes", "pvc", "storage", "autoscaling", "prometheus", "volume", "admission-webhook"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "requests",
]

[project.optional-dependencies]
test = [
    "pytest",
    "responses",
]

[project.scripts]
pvc-autoresizer = "pvcautoresizer.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["pvcautoresizer"]

[tool.pytest.ini_options]
testpaths = ["tests"]
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
