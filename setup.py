import setuptools

setuptools.setup(
  name='phone2region',
  version='0.1',
  description='A utility for mapping Chinese mobile numbers to province, city and carrier using a compact binary database',
  py_modules=['phone2region'],
  python_requires='>=3.7',
  zip_safe=False
)
