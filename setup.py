#!/usr/bin/env python
import sys
from setuptools import setup


if sys.version_info < (3, 6):
    print("Sorry, this module only works on 3.6+")
    sys.exit(1)


setup(name='sas7bdat-layout',
      version='0.1.0',
      license='MIT',
      description='A sas7bdat header and page layout decoder for Python',
      py_modules=['sas7bdat_layout'],
      install_requires=[],
      extras_require={'test': ['pytest>=7']},
      classifiers=[
          'Development Status :: 3 - Alpha',
          'Intended Audience :: Developers',
          'Intended Audience :: Science/Research',
          'License :: OSI Approved :: MIT License',
          'Operating System :: OS Independent',
          'Programming Language :: Python :: 3',
          'Topic :: Scientific/Engineering :: Information Analysis',
          'Topic :: Utilities',
      ],
      keywords=['sas', 'sas7bdat', 'binary', 'parser'])
