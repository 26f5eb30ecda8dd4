[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "imagereflector"
version = "0.1.0"
description = "Scan container image repositories, filter and record their tags, and decide when to scan again."
requires-python = ">=3.10"
dependencies = []
keywords = ["container", "image", "registry", "tags", "reconciler", "scanner"]
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
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["imagereflector"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
