[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rtcmedia"
version = "0.1.0"
description = "Real-time media helpers: RTP jitter buffering, sample building, Ogg/Opus reading and A/V synchronization"
requires-python = ">=3.10"
dependencies = []
keywords = ["rtp", "rtcp", "jitter-buffer", "opus", "ogg", "synchronization"]
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
    "Topic :: Multimedia :: Sound/Audio",
    "Topic :: Multimedia :: Video",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["rtcmedia"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
