import setuptools

with open("README.rst", "r") as fh:
    long_description = fh.read()

setuptools.setup(
    name="notevault",
    version="0.1.0",
    author="Jacob Williams",
    author_email="jacobaw@gmail.com",
    description="Notes, categories, and tags kept consistent over an embedded store or SQLite.",
    long_description=long_description,
    long_description_content_type="text/x-rst",
    packages=setuptools.find_packages('src'),
    package_dir={'': 'src'},
    entry_points={
        'console_scripts': [
            'notevault = notevault.cli:main'
        ]
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    install_requires=[
        'pyyaml>=5.3.1',
        'shortuuid',
        'terminaltables',
    ],
    extras_require={
        'test': [
            'pytest',
            'pyfakefs',
            'freezegun',
            'pytest-mock',
        ],
    },
    python_requires='>=3.8',
)
