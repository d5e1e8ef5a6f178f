[build-system]
requires = ["setuptools>=64"]
build-backend = "setuptools.build_meta"

[project]
name = "shimlog"
version = "0.1.0"
description = "Container log shipping: read a container's stdout and stderr pipes and forward each line to a log destination"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "logging",
    "containers",
    "containerd",
    "awslogs",
    "fluentd",
    "splunk",
    "log-driver",
]
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
    "Topic :: System :: Logging",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.setuptools]
packages = ["shimlog"]

[tool.pytest.ini_options]
addopts = "-ra"
