import argparse
import dataclasses
import enum
import json
import logging
import os
import re
import struct
import sys
import typing

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_PATH = 'phone.dat'

# 4 bytes of version text followed by the absolute offset of the index section
HEADER = struct.Struct('<4sI')
# phone number prefix, absolute record offset, card type
INDEX_ENTRY = struct.Struct('<IIB')

MIN_NUMBER_LENGTH = 7
MAX_NUMBER_LENGTH = 11
PREFIX_PATTERN = re.compile(r'^[0-9]{7}')
RECORD_FIELD_COUNT = 4


class PhoneDatabaseError(Exception):
  """Base class for every error raised by this module"""
  pass


class InvalidDatabaseError(PhoneDatabaseError):
  """An error raised when the database file cannot be read or its contents do
  not follow the expected layout."""

  # The path of the database file, if the error was raised while loading
  path: typing.Optional[str]
  # What was wrong with the file
  reason: str

  def __init__(self, reason: str, path: typing.Optional[str] = None):
    super().__init__(reason if path is None else f"{path}: {reason}")
    self.path = path
    self.reason = reason


class NumberLookupError(PhoneDatabaseError):
  """Base class for errors caused by the number being looked up"""

  number: str # The number submitted

  def __init__(self, number: str, message: str):
    super().__init__(message)
    self.number = number


class InvalidLengthError(NumberLookupError):
  f"""An error raised when the number submitted is shorter than
  {MIN_NUMBER_LENGTH} or longer than {MAX_NUMBER_LENGTH} characters"""

  def __init__(self, number: str):
    super().__init__(number, f"length of {number!r} is invalid")


class InvalidQueryError(NumberLookupError):
  """An error raised when the first seven characters of the number are not all
  digits"""

  def __init__(self, number: str):
    super().__init__(number, f"{number!r} does not start with a 7 digit prefix")


class NotFoundError(NumberLookupError):
  """An error raised when the number is well formed, but no index entry
  matches its prefix"""

  prefix: int # The 7 digit prefix that was searched for

  def __init__(self, number: str, prefix: int):
    super().__init__(number, f"prefix {prefix:07d} is not in the database")
    self.prefix = prefix


class InvalidOperatorCodeError(PhoneDatabaseError):
  """An error raised when an index entry carries a card type outside of the
  known carrier codes"""

  code: int

  def __init__(self, code: int):
    super().__init__(f"{code} does not identify a communications operator")
    self.code = code


class CardType(enum.IntEnum):
  """Carrier codes stored in the last byte of every index entry"""

  CMCC = 1
  CUCC = 2
  CTCC = 3
  CTCC_V = 4
  CUCC_V = 5
  CMCC_V = 6
  CBCC = 7
  CBCC_V = 8

  @classmethod
  def from_code(cls, code: int) -> 'CardType':
    try:
      return cls(code)
    except ValueError as err:
      raise InvalidOperatorCodeError(code) from err

  @property
  def description(self) -> str:
    return _CARD_TYPE_DESCRIPTIONS[self]


_CARD_TYPE_DESCRIPTIONS = {
  CardType.CMCC: '中国移动',
  CardType.CUCC: '中国联通',
  CardType.CTCC: '中国电信',
  CardType.CTCC_V: '中国电信虚拟运营商',
  CardType.CUCC_V: '中国联通虚拟运营商',
  CardType.CMCC_V: '中国移动虚拟运营商',
  CardType.CBCC: '中国广电',
  CardType.CBCC_V: '中国广电虚拟运营商',
}


@dataclasses.dataclass(frozen=True)
class PhoneInfo:
  province: str
  city: str
  zip_code: str
  area_code: str
  card_type: str

  def to_dict(self) -> dict:
    return dataclasses.asdict(self)

  def to_json(self, **kwargs) -> str:
    return json.dumps(self.to_dict(), ensure_ascii=False, **kwargs)


@dataclasses.dataclass(frozen=True)
class IndexEntry:
  # First seven digits of a phone number
  phone_no_prefix: int
  # Absolute file offset of the record, header included
  records_offset: int
  card_type: int


@dataclasses.dataclass(frozen=True)
class Database:
  """The parsed contents of a phone database. Built once by load() and never
  modified afterwards, so a single instance can be shared between threads."""

  version: str
  records: bytes
  # Sorted ascending by phone_no_prefix, exactly as written on disk
  index: typing.Tuple[IndexEntry, ...]

  def __len__(self) -> int:
    return len(self.index)

  def find(self, number: str) -> PhoneInfo:
    """Resolve the location and carrier of a number from its first seven
    digits. Numbers must be between 7 and 11 characters long."""

    if not MIN_NUMBER_LENGTH <= len(number) <= MAX_NUMBER_LENGTH:
      raise InvalidLengthError(number)

    match = PREFIX_PATTERN.match(number)
    if match is None:
      raise InvalidQueryError(number)
    prefix = int(match.group(0))

    entry = self.__search(prefix)
    if entry is None:
      raise NotFoundError(number, prefix)

    province, city, zip_code, area_code = self.__parse_record(
      entry.records_offset)
    card_type = CardType.from_code(entry.card_type)

    return PhoneInfo(province, city, zip_code, area_code, card_type.description)

  def is_known_number(self, number: str) -> bool:
    """Determine whether the number is well formed and its prefix has an entry
    in the database."""

    try:
      self.find(number)
      return True
    except NumberLookupError:
      return False

  def __search(self, prefix: int) -> typing.Optional[IndexEntry]:
    """Binary search that narrows the window to [left, mid] or [mid, right]
    and gives up once the midpoint stops moving."""

    if not self.index:
      return None

    left = 0
    right = len(self.index)
    mid = -1
    while True:
      new_mid = (left + right) // 2
      if new_mid == mid:
        return None
      mid = new_mid

      entry = self.index[mid]
      if entry.phone_no_prefix > prefix:
        right = mid
      elif entry.phone_no_prefix < prefix:
        left = mid
      else:
        return entry

  def __parse_record(self, records_offset: int) -> typing.List[str]:
    """Decode the NUL terminated `province|city|zip|area code` record that
    starts at an absolute file offset."""

    local_offset = records_offset - HEADER.size
    if not 0 <= local_offset < len(self.records):
      raise InvalidDatabaseError(
        f"record offset {records_offset} is outside of the records section")

    raw = self.records[local_offset:].split(b'\0', 1)[0]
    try:
      text = raw.decode('utf-8')
    except UnicodeDecodeError as err:
      raise InvalidDatabaseError(
        f"record at offset {records_offset} is not valid UTF-8") from err

    fields = text.split('|')
    if len(fields) != RECORD_FIELD_COUNT:
      raise InvalidDatabaseError(
        f"record at offset {records_offset} has {len(fields)} fields, "
        f"expected {RECORD_FIELD_COUNT}")
    return fields


def load(path: typing.Optional[str] = None) -> Database:
  """Read a phone database into memory. Any problem opening or parsing the
  file is reported as an InvalidDatabaseError."""

  if path is None:
    path = DEFAULT_DATABASE_PATH

  try:
    with open(path, 'rb') as data_file:
      header = data_file.read(HEADER.size)
      if len(header) != HEADER.size:
        raise InvalidDatabaseError('header is truncated', path)

      raw_version, index_offset = HEADER.unpack(header)
      try:
        version = raw_version.decode('utf-8')
      except UnicodeDecodeError as err:
        raise InvalidDatabaseError('version is not valid text', path) from err

      if index_offset < HEADER.size:
        raise InvalidDatabaseError(
          f"index offset {index_offset} points inside the header", path)

      file_size = os.fstat(data_file.fileno()).st_size
      if index_offset > file_size:
        raise InvalidDatabaseError(
          f"index offset {index_offset} is past the end of the file", path)

      records_size = index_offset - HEADER.size
      records = data_file.read(records_size)
      if len(records) != records_size:
        raise InvalidDatabaseError(
          f"records section is truncated ({len(records)} of {records_size} "
          "bytes)", path)

      raw_index = data_file.read()
  except OSError as err:
    raise InvalidDatabaseError(str(err), path) from err

  # A partial entry at the end of the file is dropped rather than rejected
  trailing = len(raw_index) % INDEX_ENTRY.size
  if trailing:
    logger.warning(
      f"{path}: ignoring {trailing} trailing bytes after the last index entry")
    raw_index = raw_index[:-trailing]

  index = tuple(
    IndexEntry(prefix, offset, card_type)
    for prefix, offset, card_type in INDEX_ENTRY.iter_unpack(raw_index))

  logger.debug(
    f"Loaded {path} version {version}: {len(records)} record bytes, "
    f"{len(index)} index entries")
  return Database(version, records, index)


def find(number: str, path: typing.Optional[str] = None) -> PhoneInfo:
  """Load the database and resolve a single number. Callers looking up many
  numbers should load() once and use Database.find instead."""

  return load(path).find(number)


def main(argv: typing.Optional[typing.List[str]] = None) -> int:
  parser = argparse.ArgumentParser(description='''Looks up the province,
    city, zip code, area code and carrier of Chinese mobile numbers.''')
  parser.add_argument('numbers', metavar='NUMBER', nargs='+', help='''A phone
    number, or at least its first 7 digits.''')
  parser.add_argument('-d', '--database', dest='database_path',
    default=DEFAULT_DATABASE_PATH, type=str, help='''The path at which the
    phone database is located.''')
  parser.add_argument('-v', '--verbose', action='store_true', help='''Log
    details about the loaded database.''')
  args = parser.parse_args(argv)

  logging.basicConfig(
    level=logging.DEBUG if args.verbose else logging.WARNING,
    format='%(levelname)s: %(message)s')

  try:
    database = load(args.database_path)
  except InvalidDatabaseError as err:
    logger.error(err)
    return 2

  status = 0
  for number in args.numbers:
    try:
      print(database.find(number).to_json())
    except PhoneDatabaseError as err:
      logger.error(f"{number}: {err}")
      status = 1
  return status


if __name__ == '__main__':
  sys.exit(main())
