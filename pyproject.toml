[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "entropynet"
version = "0.1.0"
description = "Length-framed Unix socket connections and server, plus a WebRTC data-channel connection over a pluggable peer"
requires-python = ">=3.10"
dependencies = []
keywords = ["ipc", "unix-socket", "networking", "framing", "webrtc", "data-channel"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["entropynet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
