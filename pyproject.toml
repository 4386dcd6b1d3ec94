[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "clusteroperator"
version = "0.1.0"
description = "Cluster operator toolkit: configuration loading, admission rules and webhook, rule-binding cache and resource watches"
requires-python = ">=3.10"
dependencies = []
keywords = ["kubernetes", "operator", "admission", "webhook", "security", "watch"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
    "Topic :: Security",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["clusteroperator"]

[tool.pytest.ini_options]
addopts = "-ra"
