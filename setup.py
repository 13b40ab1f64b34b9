# setup.py
from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="sdm-pipeline", # Название пакета, которое будет использоваться при pip install
    version="0.1.0",
    author="Ваше Имя",
    author_email="ogletix@gmail.com",
    description="Species Distribution Modeling pipeline: GBIF occurrences, WorldClim predictors, MaxEnt",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]), # Автоматически находит пакеты
    install_requires=[
        "numpy>=1.20.0",
        "pandas>=1.3.0",
        "geopandas>=0.9.0",
        "shapely>=1.8.0",
        "rasterio>=1.2.0",
        "scipy>=1.7.0",
        "scikit-learn>=1.0.0",
        "elapid>=1.0.0",
        "pygbif>=0.6.0",
        "requests>=2.25.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: GIS",
        "Intended Audience :: Science/Research",
    ],
    python_requires=">=3.8", # Минимальная версия Python
    entry_points={
        'console_scripts': [
            'sdm-pipeline=sdm_pipeline.cli.sdm_cli:main',
        ],
    },
)
