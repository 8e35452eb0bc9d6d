from setuptools import setup, find_packages

with open("requirements.txt") as f:
    requirements = f.read().splitlines()

setup(
    name='litterlai',
    version='0.1.0',
    author='',
    author_email='',
    description='Monte Carlo leaf area index estimates from litterfall mass and specific leaf area',
    #long_description=open('README.md').read(),
    #long_description_content_type='text/markdown',
    packages=find_packages(exclude=['tests', 'example_scripts']),
    include_package_data=True,
    install_requires=requirements,
    extras_require={'test': ['pytest']},
    python_requires='>=3.9',
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ]
)
