from setuptools import setup, find_packages

setup(
    name="pattern_guard",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "requests",
        "pyyaml",
        "numpy>=1.24",
        # Pattern clustering (union-find)
        "networkx>=3.0",
        # Structural chunking
        "tree-sitter>=0.22",
        "tree-sitter-python",
        "tree-sitter-javascript",
        "tree-sitter-typescript",
        "tree-sitter-java",
        "tree-sitter-c",
        "tree-sitter-cpp",
        "tree-sitter-go",
        "tree-sitter-rust",
        "tree-sitter-ruby",
        "tree-sitter-php",
        "tree-sitter-c-sharp",
        "watchdog>=3.0",
        "tqdm>=4.60",
    ],
    extras_require={
        # Hosted embedding backend (install separately when needed)
        "openai": [
            "openai>=1.0",
        ],
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "pattern-guard=pattern_guard.cli:main",
        ],
    },
    author="pattern_guard contributors",
    description="Semantic code index that detects drift from established architectural patterns.",
)
