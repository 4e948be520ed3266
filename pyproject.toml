[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "stackset"
version = "0.1.0"
description = "Stack and StackSet state, resource generation and traffic switching logic for versioned application deployments"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "stackset", "traffic-switching", "deployment", "prescaling"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["stackset"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
