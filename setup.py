import setuptools
from setuptools import find_packages

with open("readme.md", "r") as fh:
    long_description = fh.read()


vars2find = ["__author__", "__version__", "__url__"]
vars2readme = {}
with open("./foundry_recovery/__init__.py") as f:
    for line in f.readlines():
        for v in vars2find:
            if line.startswith(v):
                line = line.replace(" ", "").replace('"', "").replace("'", "").strip()
                vars2readme[v] = line.split("=", 1)[1]

core_deps = [
    "kubernetes>=28.1.0",
    "urllib3",
    "aioboto3",
    "botocore",
    "pydantic>=2.0",
    "tenacity",
    "pyyaml",
    "python-dotenv",
    "filelock>=3.12",
]

setuptools.setup(
    name="foundry-recovery",
    url=vars2readme["__url__"],
    version=vars2readme["__version__"],
    author=vars2readme["__author__"],
    description="Disaster recovery for the Foundry platform's data stores on Kubernetes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.9",
    install_requires=core_deps,
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "foundry-recovery=foundry_recovery.cli:main",
        ],
    },
)
