[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vgpusched"
version = "0.1.0"
description = "Scheduler extender and admission webhook logic for sharing GPU, MLU and DCU devices between Kubernetes pods"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "kubernetes",
    "scheduler",
    "scheduler-extender",
    "gpu",
    "vgpu",
    "device-sharing",
    "admission-webhook",
    "wsgi",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Distributed Computing",
    "Topic :: System :: Clustering",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
vgpusched-version = "vgpusched.version:main"

[tool.hatch.build.targets.wheel]
packages = ["vgpusched"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
