from setuptools import setup, find_packages
from pathlib import Path

# Read the contents of README.md for long description
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8')

setup(
    name="gbifregions",
    version="0.1.0",

    # Descriptions
    description="Coordinate cleaning and per-region summaries for GBIF occurrence data",
    long_description=long_description,
    long_description_content_type="text/markdown",

    # License
    license="MIT",

    # Package discovery
    packages=find_packages(exclude=["tests", "tests.*", "docs", "examples"]),

    # Include non-Python files specified in MANIFEST.in
    include_package_data=True,

    # Python version requirement
    python_requires=">=3.9",

    # Core dependencies
    install_requires=[
        "pandas>=1.5.0",
        "numpy>=1.21.0",
        "geopandas>=1.0.0",
        "shapely>=2.0.0",
        "pyproj>=3.3.0",
        "pyogrio>=0.6.0",
        "matplotlib>=3.5.0",
        "seaborn>=0.12.0",
        "jinja2>=3.0.0",
        "pyyaml>=6.0",
    ],

    # Optional dependencies for specific features
    extras_require={
        "dev": [
            "pytest>=7.0.0",
            "pytest-cov>=3.0.0",
            "black>=22.0.0",
            "flake8>=4.0.0",
            "mypy>=0.950",
        ],
    },

    # Command-line interface
    entry_points={
        'console_scripts': [
            'gbifregions=gbifregions.cli:main',
        ],
    },

    # PyPI classifiers
    classifiers=[
        "Development Status :: 3 - Alpha",

        "Intended Audience :: Science/Research",

        "Topic :: Scientific/Engineering :: GIS",
        "Topic :: Scientific/Engineering :: Bio-Informatics",

        "License :: OSI Approved :: MIT License",

        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",

        "Operating System :: OS Independent",
        "Natural Language :: English",
    ],

    # Keywords for PyPI search
    keywords=[
        "GBIF",
        "biodiversity",
        "occurrence data",
        "species distribution",
        "coordinate cleaning",
        "biogeography",
        "spatial join",
        "geopandas",
    ],

    # Minimum setuptools version
    setup_requires=["setuptools>=45.0"],

    zip_safe=False,
)
