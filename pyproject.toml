[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "iderestore"
version = "1.0.1"
description = "Device restore building blocks: FLS and ftab firmware containers, ASR image streaming, FDR proxying and download helpers"
requires-python = ">=3.10"
dependencies = []
keywords = ["restore", "firmware", "ftab", "fls", "asr", "fdr", "plist"]
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
    "Topic :: System :: Software Distribution",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["iderestore"]

[tool.pytest.ini_options]
addopts = "-ra"
