[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "outbound"
version = "0.1.0"
description = "ShadowsocksR obfuscation and protocol plugins and VMess AEAD framing over caller-supplied byte streams"
requires-python = ">=3.10"
keywords = ["proxy", "shadowsocksr", "ssr", "obfs", "vmess", "aead"]
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
    "Topic :: Internet :: Proxy Servers",
    "Topic :: Security :: Cryptography",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "cryptography",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["outbound"]

[tool.hatch.build.targets.sdist]
include = ["outbound", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
