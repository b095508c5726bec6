from setuptools import setup, find_packages

setup(
    name="codekb",
    version="0.3.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "requests",
        "pyyaml",
        # Code graph
        "networkx>=3.0",
        "tree-sitter>=0.22",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "tree-sitter-go",
        "tree-sitter-rust",
        "tiktoken",
        "watchdog>=3.0",
        "tqdm>=4.60",
        # Vector store
        "numpy",
    ],
    extras_require={
        # OpenAI embeddings (install separately when needed)
        "semantic": [
            "openai>=1.0",
        ],
        "test": [
            "pytest",
        ],
    },
    entry_points={
        "console_scripts": [
            "codekb=codekb.cli:main",
        ],
    },
    python_requires=">=3.10",
    description="Structural code knowledge index with incremental graph and vector updates.",
)
