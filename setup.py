from setuptools import setup, find_packages

setup(
    name='buildresolver',
    version='0.1.0',
    description='Resolves game build and patch download URLs across official and mirror sources',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    python_requires='>=3.10',
    install_requires=[
        'aiohttp',
        'platformdirs',
        'PyYAML',
        'rich',
    ],
    extras_require={
        'test': [
            'pytest<9.1',
            'pytest-asyncio',
            'pytest-mock',
        ],
    },
    # Include other metadata as needed
)
