[build-system]
requires = ["setuptools>=61.0"]
build-backend = "setuptools.build_meta"

[project]
name = "hfuzzcfg"
version = "0.1.0"
description = "Command-line configuration and status display for a feedback-driven fuzzer"
requires-python = ">=3.10"
dependencies = []
keywords = ["fuzzing", "fuzzer", "command-line", "configuration", "testing"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
hfuzzcfg = "hfuzzcfg.cmdline:main"

[tool.setuptools.packages.find]
include = ["hfuzzcfg*"]

[tool.pytest.ini_options]
addopts = "-ra"
