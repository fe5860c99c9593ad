[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "aperture"
version = "0.1.0"
description = "LSAT authentication tokens, macaroons, caveats, satisfiers, token storage and call interceptors"
requires-python = ">=3.10"
dependencies = []
keywords = ["lsat", "macaroon", "caveat", "lightning", "authentication", "bolt11"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP",
    "Topic :: Security",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["aperture"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
