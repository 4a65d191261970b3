[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nbnet"
version = "0.1.0"
description = "Non-blocking networking engine with listener muxing, buffer pooling, proxy dialers and an Autobahn report summariser"
requires-python = ">=3.10"
dependencies = []
keywords = ["networking", "non-blocking", "event-loop", "tcp", "udp", "unix-socket", "socks5", "proxy", "autobahn"]
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
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
nbnet-autobahn-report = "nbnet.reporter:main"

[tool.hatch.build.targets.wheel]
packages = ["nbnet"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
