"""Setup script for file-packer"""
from setuptools import setup
from pathlib import Path
readme_path = Path(__file__).parent / "README.md"
long_description = readme_path.read_text(encoding="utf-8") if readme_path.exists() else ""
setup(
    name="file-packer",
    version="1.0.0",
    author="File Packer Project",
    description="Minimal binary archiver: pack files into one container and unpack them again",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["file_packer"],
    python_requires=">=3.8",
    install_requires=[
        "rich>=10.0.0",
        "tqdm>=4.60.0",
    ],
    extras_require={
        "dev": ["pytest>=6.0.0", "black>=22.0.0", "flake8>=4.0.0"],
    },
    entry_points={
        "console_scripts": [
            "file-packer=file_packer:cli_main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Archiving",
    ],
)
