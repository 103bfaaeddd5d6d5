from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

setup(
    name="dbtransit",
    version="0.1.0",
    author="Apollo Raines",
    author_email="apollo@saiql.ai",
    description="dbtransit: parallel table copies between databases, files and warehouses",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/apolloraines/dbtransit",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: Other/Proprietary License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Database",
    ],
    python_requires=">=3.11",
    install_requires=requirements,
    extras_require={
        "tests": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "dbtransit=dbtransit.tools.cli:main",
        ],
    },
    include_package_data=True,
)
