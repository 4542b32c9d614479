"""GraphQL documents for the Hardcover API (https://docs.hardcover.app/api/)."""

GET_ME_QUERY = """
query {
  me {
    id
    account_privacy_setting_id
  }
}
"""

PING_QUERY = "{ __typename }"

SEARCH_BOOKS_QUERY = """
query SearchBooks($query: String!, $perPage: Int) {
  search(query: $query, query_type: "Book", per_page: $perPage) {
    results
  }
}
"""

HYDRATE_BOOKS_QUERY = """
query HydrateBooks($ids: [Int!]) {
  books(where: { id: { _in: $ids }}) {
    id
    title
    cached_image
    contributions: cached_contributors
  }
}
"""

USER_BOOK_FIELDS = """
  id
  book_id
  status_id
  edition_id
  book {
    pages
  }
  edition {
    pages
  }
  user_book_reads(order_by: {id: asc}) {
    id
    started_at
    finished_at
    progress_pages
    edition_id
  }
"""

GET_USER_BOOK_QUERY = """
query GetUserBook($userBookId: Int!) {
  user_books(where: { id: { _eq: $userBookId } }, limit: 1) {%s}
}
""" % USER_BOOK_FIELDS

FIND_USER_BOOK_QUERY = """
query FindUserBook($bookId: Int!, $userId: Int!) {
  user_books(where: { book_id: { _eq: $bookId }, user_id: { _eq: $userId } }, limit: 1) {%s}
}
""" % USER_BOOK_FIELDS

READ_FIELDS = """
  error
  user_book_read {
    id
    progress_pages
    edition_id
    started_at
  }
"""

CREATE_READ_MUTATION = """
mutation CreateRead($userBookId: Int!, $pages: Int, $editionId: Int, $startedAt: date) {
  insert_user_book_read(user_book_id: $userBookId, user_book_read: {
    progress_pages: $pages,
    edition_id: $editionId,
    started_at: $startedAt
  }) {%s}
}
""" % READ_FIELDS

UPDATE_PROGRESS_MUTATION = """
mutation UpdateProgress($readId: Int!, $pages: Int, $editionId: Int, $startedAt: date) {
  update_user_book_read(id: $readId, object: {
    progress_pages: $pages,
    edition_id: $editionId,
    started_at: $startedAt
  }) {%s}
}
""" % READ_FIELDS

CREATE_USER_BOOK_MUTATION = """
mutation CreateUserBook($object: UserBookCreateInput!) {
  insert_user_book(object: $object) {
    error
    user_book {
      id
      book_id
      status_id
    }
  }
}
"""

UPDATE_STATUS_MUTATION = """
mutation UpdateStatus($userBookId: Int!, $statusId: Int!) {
  update_user_book(id: $userBookId, object: { status_id: $statusId }) {
    error
    user_book {
      id
      status_id
    }
  }
}
"""

DELETE_READ_MUTATION = """
mutation DeleteRead($readId: Int!) {
  delete_user_book_read(id: $readId) {
    id
  }
}
"""

GET_ALL_READS_QUERY = """
query GetAllReads($userBookId: Int!) {
  user_books(where: { id: { _eq: $userBookId } }) {
    id
    user_book_reads(order_by: {id: asc}) {
      id
      started_at
      finished_at
      progress_pages
      edition_id
    }
  }
}
"""
