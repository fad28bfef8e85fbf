from setuptools import setup, find_namespace_packages

setup(
    name="filesim-cli",
    version="0.1.0",
    description="File simulator control plane CLI",
    long_description="Command line interface for the file simulator control plane -- list, create, stop/start and watch protocol servers.",
    long_description_content_type="text/markdown",
    license_expression="MIT",
    package_dir={"": "src"},
    packages=find_namespace_packages(where="src"),
    install_requires=[
        "aiohttp[speedups]>=3.10,<4",
        "rich>=13.0.0",
        "typer>=0.12.5",
    ],
    extras_require={
        "dev": [
            "ruff",
            "wheel",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3.10",
    ],
    entry_points={
        "console_scripts": [
            "filesim=filesim_cli.cli:app",
        ],
    },
)
