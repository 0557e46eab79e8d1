from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

import models
from services import CatalogService
from utils.dependencies import get_catalog, librarian_required

router = APIRouter(prefix="/books", tags=["Books"])


@router.get("/", response_model=List[models.BookResponse])
async def list_books(
    q: Optional[str] = Query(None, description="Search title, author, ISBN or category"),
    category: Optional[str] = None,
    available: bool = False,
    catalog: CatalogService = Depends(get_catalog),
):
    books = await catalog.list_books(search=q, category=category, available_only=available)
    return [models.BookResponse.from_book(b) for b in books]


@router.get("/categories", response_model=List[str])
async def list_categories(catalog: CatalogService = Depends(get_catalog)):
    return await catalog.categories()


@router.get("/{book_id}", response_model=models.BookResponse)
async def get_book(book_id: int, catalog: CatalogService = Depends(get_catalog)):
    return models.BookResponse.from_book(await catalog.get_book(book_id))


@router.post("/", response_model=models.BookResponse, status_code=status.HTTP_201_CREATED)
async def add_book(
    book: models.BookCreate,
    catalog: CatalogService = Depends(get_catalog),
    librarian=Depends(librarian_required),
):
    return models.BookResponse.from_book(await catalog.create_book(book))


@router.put("/{book_id}", response_model=models.BookResponse)
async def update_book(
    book_id: int,
    payload: models.BookUpdate,
    catalog: CatalogService = Depends(get_catalog),
    librarian=Depends(librarian_required),
):
    return models.BookResponse.from_book(await catalog.update_book(book_id, payload))


@router.patch("/{book_id}/add-copies", response_model=models.BookResponse)
async def add_book_copies(
    book_id: int,
    copies: int = Query(..., gt=0),
    catalog: CatalogService = Depends(get_catalog),
    librarian=Depends(librarian_required),
):
    """Add more copies of an existing book"""
    return models.BookResponse.from_book(await catalog.add_copies(book_id, copies))


@router.patch("/{book_id}/remove-copies", response_model=models.BookResponse)
async def remove_book_copies(
    book_id: int,
    copies: int = Query(..., gt=0),
    catalog: CatalogService = Depends(get_catalog),
    librarian=Depends(librarian_required),
):
    """Remove copies of a book (only if not borrowed)"""
    return models.BookResponse.from_book(await catalog.remove_copies(book_id, copies))


@router.delete("/{book_id}")
async def delete_book(
    book_id: int,
    catalog: CatalogService = Depends(get_catalog),
    librarian=Depends(librarian_required),
):
    """Delete a book (only if no copies are currently issued)"""
    book = await catalog.delete_book(book_id)
    return {"message": f"Book '{book.title}' has been removed from the library", "book_id": book_id}
