[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "kite-patcher"
version = "6.0.0"
description = "Tools for inspecting and patching arm64 Linux kernel images and Android boot images"
requires-python = ">=3.10"
dependencies = [
    "lz4",
]
keywords = ["android", "boot image", "kernel", "kallsyms", "arm64", "lz4", "gzip"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels :: Linux",
    "Topic :: System :: Archiving :: Compression",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["kite_patcher"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
