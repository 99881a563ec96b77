[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "haplink"
version = "0.1.0"
description = "HomeKit Accessory Protocol building blocks: TLV8 codec, pairing storage, encrypted sessions and the accessory HTTP server"
requires-python = ">=3.10"
dependencies = [
    "cryptography",
]
keywords = ["homekit", "hap", "tlv8", "home-automation", "accessory", "pairing"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Framework :: AsyncIO",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Home Automation",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["haplink"]

[tool.hatch.build.targets.sdist]
include = ["haplink", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
