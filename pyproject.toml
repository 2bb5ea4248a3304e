[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "solix"
version = "1.0.0"
description = "A simulated microkernel toolkit: slab allocator, protocol headers, a small network stack and a command shell"
requires-python = ">=3.10"
dependencies = []
keywords = ["kernel", "slab", "allocator", "network", "arp", "icmp", "shell", "simulation"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["solix"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
