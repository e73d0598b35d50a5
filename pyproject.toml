[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sockcan"
version = "0.1.0"
description = "SocketCAN command line tools: gateway rules, sequence tests, sniffing and ISO-TP inspection"
requires-python = ">=3.10"
dependencies = []
keywords = ["can", "socketcan", "can-fd", "isotp", "iso15765", "uds", "netlink", "automotive"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: Manufacturing",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Embedded Systems :: Controller Area Network (CAN)",
    "Topic :: System :: Networking",
    "Topic :: Utilities",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cangw = "sockcan.cangw:main"
cansequence = "sockcan.cansequence:main"
cansniffer = "sockcan.cansniffer:main"
isotpdump = "sockcan.isotpdump:main"
isotpperf = "sockcan.isotpperf:main"
isotprecv = "sockcan.isotprecv:main"

[tool.hatch.build.targets.wheel]
packages = ["sockcan"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
